"""
grid.py 測試套件
測試格點網格、雙緩衝角色交換與平衡態初始化
"""

import pytest
import numpy as np

from lbm27.config.core import WEIGHTS_3D
from lbm27.core import grid as grid_module
from lbm27.core.grid import Grid, GridBuffer, NodeType, FLUID, SOLID, INLET, OUTLET
from lbm27.core.lattice import equilibrium_distribution


@pytest.fixture
def node_types():
    types = np.full((4, 3, 3), FLUID, dtype=np.uint8)
    types[0, :, :] = INLET
    types[-1, :, :] = OUTLET
    types[1, 0, 0] = SOLID
    return types


class TestNodeType:

    def test_tag_values(self):
        assert [int(t) for t in NodeType] == [0, 1, 2, 3]
        assert (FLUID, SOLID, INLET, OUTLET) == (0, 1, 2, 3)


class TestGrid:
    """單一網格測試"""

    def test_field_shapes(self):
        grid = Grid((4, 3, 2))
        assert grid.f.shape == (27, 4, 3, 2)
        assert grid.rho.shape == (4, 3, 2)
        assert grid.u.shape == (4, 3, 2)
        assert grid.total_nodes == 24
        grid.destroy()

    def test_invalid_shape(self):
        with pytest.raises(ValueError):
            Grid((0, 3, 3))

    def test_node_type_shape_mismatch(self, node_types):
        grid = Grid((3, 3, 3))
        with pytest.raises(ValueError):
            grid.set_node_types(node_types)
        grid.destroy()

    def test_node_type_roundtrip(self, node_types):
        grid = Grid(node_types.shape)
        grid.set_node_types(node_types)
        np.testing.assert_array_equal(grid.node_types_numpy(), node_types)
        grid.destroy()

    def test_new_grid_starts_zeroed(self):
        grid = Grid((2, 3, 2))
        np.testing.assert_array_equal(grid.f.to_numpy(), 0.0)
        np.testing.assert_array_equal(grid.node_types_numpy(), FLUID)
        grid.destroy()

    def test_allocate_after_destroying_unused_grid(self, node_types):
        """測試釋放未使用過的網格後，同一會話中仍可建立並使用新網格"""
        Grid((3, 3, 3)).destroy()
        grid = Grid(node_types.shape)
        grid.set_node_types(node_types)
        np.testing.assert_array_equal(grid.node_types_numpy(), node_types)
        grid.destroy()

    def test_destroy_idempotent(self):
        grid = Grid((2, 2, 2))
        grid.destroy()
        grid.destroy()
        assert grid.destroyed


class TestGridBuffer:
    """雙緩衝測試"""

    def test_swap_exchanges_roles(self):
        buffers = GridBuffer((2, 2, 2))
        first, second = buffers.current, buffers.next
        assert first is not second

        buffers.swap()
        assert buffers.current is second
        assert buffers.next is first
        assert buffers.swap_count == 1

        buffers.swap()
        assert buffers.current is first
        buffers.release()

    def test_initialize_equilibrium(self, lattice, node_types):
        """測試 Inlet 以入口速度、其餘節點以靜止平衡態初始化"""
        buffers = GridBuffer(node_types.shape)
        u_in = (0.05, 0.0, 0.0)
        buffers.initialize(lattice, node_types, 1.0, u_in)

        for grid in (buffers.current, buffers.next):
            f = grid.f.to_numpy()
            u = grid.u.to_numpy()
            np.testing.assert_allclose(grid.rho.to_numpy(), 1.0)
            np.testing.assert_allclose(f[:, 0, 1, 1], equilibrium_distribution(1.0, u_in), rtol=1e-5)
            np.testing.assert_allclose(u[0, 1, 1], u_in, atol=1e-7)
            for node in [(1, 1, 1), (1, 0, 0), (3, 2, 2)]:
                np.testing.assert_allclose(f[(slice(None),) + node], WEIGHTS_3D, rtol=1e-6)
                np.testing.assert_array_equal(u[node], 0.0)
            np.testing.assert_array_equal(grid.node_types_numpy(), node_types)
        buffers.release()

    def test_initialize_reference_density(self, lattice, node_types):
        buffers = GridBuffer(node_types.shape)
        buffers.initialize(lattice, node_types, 1.2, (0.0, 0.0, 0.0))
        f = buffers.current.f.to_numpy()
        np.testing.assert_allclose(f.sum(axis=0), 1.2, rtol=1e-5)
        buffers.release()

    def test_failed_construction_releases_first_grid(self, monkeypatch):
        """測試第二個網格建立失敗時第一個網格被釋放"""
        created = []

        def flaky_grid(shape, name="grid"):
            if name == "B":
                raise MemoryError("裝置記憶體不足")
            grid = Grid(shape, name)
            created.append(grid)
            return grid

        monkeypatch.setattr(grid_module, "Grid", flaky_grid)
        with pytest.raises(MemoryError):
            GridBuffer((2, 2, 2))
        assert len(created) == 1
        assert created[0].destroyed

    def test_release(self):
        buffers = GridBuffer((2, 2, 2))
        assert not buffers.released
        buffers.release()
        assert buffers.released
        buffers.release()
        assert buffers.released
