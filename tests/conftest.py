"""
測試共用設定
每個測試模組在CPU後端上重新初始化Taichi，結束時釋放
"""

import pytest
import taichi as ti

from lbm27.core.lattice import LatticeModel


@pytest.fixture(scope="module", autouse=True)
def setup_taichi():
    """設置Taichi測試環境"""
    ti.init(arch=ti.cpu, fast_math=False, random_seed=42)
    yield
    ti.reset()


@pytest.fixture
def lattice():
    """D3Q27格子模型"""
    return LatticeModel()
