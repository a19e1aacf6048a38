# init.py
"""
Taichi 計算裝置初始化模組

依設定選擇後端: gpu 優先使用 CUDA / Metal / Vulkan，auto 在GPU不可用時回落到CPU。
fast_math 關閉，使核心中的 NaN 檢查 (x != x) 保持有效。
"""

import logging

import taichi as ti

from lbm27.error_handling import DeviceInitError

logger = logging.getLogger(__name__)

# 全域變數追蹤初始化狀態
_taichi_initialized = False
_active_arch = None


def initialize_taichi_once(arch: str = "auto", **kwargs) -> str:
    """
    統一的Taichi初始化函數 - 避免重複初始化

    Args:
        arch: "auto" | "cpu" | "gpu"

    Returns:
        實際使用的後端名稱

    Raises:
        DeviceInitError: 沒有可用的計算裝置
    """
    global _taichi_initialized, _active_arch

    if _taichi_initialized:
        logger.debug(f"Taichi已初始化 ({_active_arch})，跳過重複初始化")
        return _active_arch

    options = dict(fast_math=False, debug=False, offline_cache=True)
    options.update(kwargs)

    if arch not in ("auto", "cpu", "gpu"):
        raise DeviceInitError(f"未知的計算後端: {arch}", {'arch': arch})

    if arch in ("auto", "gpu"):
        try:
            ti.init(arch=ti.gpu, **options)
            if ti.lang.impl.current_cfg().arch != ti.cpu:
                _taichi_initialized = True
                _active_arch = "gpu"
                logger.info("✅ 使用GPU計算")
                return _active_arch
            # ti.gpu 無可用裝置時 Taichi 會自行回落到CPU
            if arch == "gpu":
                ti.reset()
                raise DeviceInitError("沒有可用的GPU裝置", {'arch': arch})
            _taichi_initialized = True
            _active_arch = "cpu"
            logger.warning("⚠️  GPU不可用，使用CPU計算")
            return _active_arch
        except RuntimeError as e:
            if arch == "gpu":
                raise DeviceInitError(f"GPU初始化失敗: {e}", {'arch': arch}) from e
            logger.warning(f"⚠️  GPU初始化失敗，回落到CPU: {e}")

    try:
        ti.init(arch=ti.cpu, **options)
    except RuntimeError as e:
        raise DeviceInitError(f"CPU後端初始化失敗: {e}", {'arch': arch}) from e

    _taichi_initialized = True
    _active_arch = "cpu"
    logger.info("✅ 使用CPU計算")
    return _active_arch


def release_device() -> None:
    """釋放Taichi執行環境與全部場變數"""
    global _taichi_initialized, _active_arch
    if _taichi_initialized:
        ti.reset()
        logger.debug("Taichi執行環境已釋放")
    _taichi_initialized = False
    _active_arch = None
