"""
collision.py 測試套件
測試BGK碰撞、馬赫數截斷、密度回退與各節點類型的處理
"""

import pytest
import numpy as np

from lbm27.config.core import Q_3D, WEIGHTS_3D, MAX_VELOCITY_LU
from lbm27.core.collision import CollisionStage
from lbm27.core.grid import GridBuffer, FLUID, SOLID, INLET, OUTLET
from lbm27.core.lattice import equilibrium_distribution
from lbm27.error_handling import InvalidRelaxationTime, CFDError

TAU = 0.6
U_IN = (0.05, 0.0, 0.0)


def make_buffers(node_types, f):
    """建立雙緩衝並寫入 current 網格的分布函數"""
    node_types = np.asarray(node_types, dtype=np.uint8)
    buffers = GridBuffer(node_types.shape)
    for grid in (buffers.current, buffers.next):
        grid.set_node_types(node_types)
    buffers.current.f.from_numpy(np.ascontiguousarray(f, dtype=np.float32))
    return buffers


def uniform(distribution, shape):
    distribution = np.asarray(distribution, dtype=np.float32)
    return np.array(np.broadcast_to(distribution[:, None, None, None], (Q_3D,) + tuple(shape)), dtype=np.float32)


@pytest.fixture
def stage(lattice):
    return CollisionStage(lattice, TAU, 1.0, U_IN)


class TestRelaxation:
    """流體節點BGK鬆弛測試"""

    def test_rejects_unstable_tau(self, lattice):
        with pytest.raises(InvalidRelaxationTime):
            CollisionStage(lattice, 0.5, 1.0, U_IN)
        assert issubclass(InvalidRelaxationTime, CFDError)

    def test_equilibrium_is_fixed_point(self, stage):
        """測試平衡態碰撞後不變"""
        f_eq = equilibrium_distribution(1.0, U_IN)
        buffers = make_buffers(np.zeros((2, 2, 2)), uniform(f_eq, (2, 2, 2)))
        assert stage.apply(buffers.current, buffers.next) == 0

        f_post = buffers.next.f.to_numpy()
        np.testing.assert_allclose(f_post[:, 1, 1, 1], f_eq, atol=1e-6)
        np.testing.assert_allclose(buffers.next.rho.to_numpy(), 1.0, rtol=1e-5)
        np.testing.assert_allclose(buffers.next.u.to_numpy()[0, 0, 0], U_IN, atol=1e-6)
        buffers.release()

    def test_bgk_contraction(self, stage):
        """測試非平衡部分按 (1 - ω) 收縮"""
        f_eq = equilibrium_distribution(1.0, U_IN)
        # 不改變質量與動量的擾動
        perturbation = np.zeros(Q_3D)
        perturbation[0] = 0.01
        perturbation[1] = -0.005
        perturbation[2] = -0.005
        f_pre = f_eq + perturbation

        buffers = make_buffers(np.zeros((2, 2, 2)), uniform(f_pre, (2, 2, 2)))
        stage.apply(buffers.current, buffers.next)
        f_post = buffers.next.f.to_numpy()[:, 0, 1, 0]

        expected = f_eq + (1.0 - 1.0 / TAU) * perturbation
        np.testing.assert_allclose(f_post, expected, atol=1e-6)
        assert np.abs(f_post - f_eq).sum() < np.abs(f_pre - f_eq).sum()
        buffers.release()

    def test_conserves_mass_and_momentum(self, stage):
        rng = np.random.default_rng(7)
        f_pre = equilibrium_distribution(1.1, (0.02, -0.03, 0.01)) * (1.0 + 0.02 * rng.random(Q_3D))
        buffers = make_buffers(np.zeros((1, 1, 1)), uniform(f_pre, (1, 1, 1)))
        stage.apply(buffers.current, buffers.next)
        f_post = buffers.next.f.to_numpy()[:, 0, 0, 0].astype(np.float64)

        velocities = np.array([stage.lattice.velocity_vector(q) for q in range(Q_3D)])
        assert f_post.sum() == pytest.approx(f_pre.sum(), rel=1e-5)
        np.testing.assert_allclose(f_post @ velocities, f_pre @ velocities, atol=1e-5)
        buffers.release()

    def test_mach_clamp(self, stage):
        """測試 |u| > 0.3c_s 時速度等比例縮放"""
        u = np.array([0.15, 0.1, 0.05])
        assert np.linalg.norm(u) > MAX_VELOCITY_LU
        buffers = make_buffers(np.zeros((1, 1, 1)), uniform(equilibrium_distribution(1.0, u), (1, 1, 1)))
        stage.apply(buffers.current, buffers.next)

        u_post = buffers.next.u.to_numpy()[0, 0, 0]
        assert np.linalg.norm(u_post) == pytest.approx(MAX_VELOCITY_LU, rel=1e-5)
        np.testing.assert_allclose(u_post / np.linalg.norm(u_post), u / np.linalg.norm(u), atol=1e-5)
        buffers.release()


class TestDensityFallback:
    """密度保護回退測試"""

    def test_invalid_nodes_reset_to_rest(self, stage):
        f = uniform(WEIGHTS_3D, (4, 1, 1))
        f[:, 0, 0, 0] = 0.0                # ρ = 0
        f[:, 1, 0, 0] = np.nan             # ρ = NaN
        f[:, 2, 0, 0] = -WEIGHTS_3D        # ρ < 0

        buffers = make_buffers(np.zeros((4, 1, 1)), f)
        assert stage.apply(buffers.current, buffers.next) == 3

        f_post = buffers.next.f.to_numpy()
        rho = buffers.next.rho.to_numpy()
        u = buffers.next.u.to_numpy()
        for i in range(3):
            np.testing.assert_allclose(f_post[:, i, 0, 0], WEIGHTS_3D, rtol=1e-6)
            assert rho[i, 0, 0] == pytest.approx(1.0)
            np.testing.assert_array_equal(u[i, 0, 0], 0.0)
        assert np.isfinite(f_post).all()
        buffers.release()

    def test_infinite_density(self, stage):
        f = uniform(WEIGHTS_3D, (1, 1, 1))
        f[0, 0, 0, 0] = np.inf
        buffers = make_buffers(np.zeros((1, 1, 1)), f)
        assert stage.apply(buffers.current, buffers.next) == 1
        buffers.release()

    def test_counter_reset_per_dispatch(self, stage):
        f = uniform(WEIGHTS_3D, (2, 1, 1))
        f[:, 0, 0, 0] = 0.0
        buffers = make_buffers(np.zeros((2, 1, 1)), f)
        assert stage.apply(buffers.current, buffers.next) == 1

        buffers.swap()
        assert stage.apply(buffers.current, buffers.next) == 0
        buffers.release()


class TestNodeTypes:
    """非流體節點處理測試"""

    def test_inlet_pinned_to_equilibrium(self, stage):
        rng = np.random.default_rng(3)
        f = rng.random((Q_3D, 2, 1, 1)).astype(np.float32)
        buffers = make_buffers([[[INLET]], [[FLUID]]], f)
        stage.apply(buffers.current, buffers.next)

        np.testing.assert_allclose(buffers.next.f.to_numpy()[:, 0, 0, 0],
                                   equilibrium_distribution(1.0, U_IN), rtol=1e-5)
        assert buffers.next.rho.to_numpy()[0, 0, 0] == pytest.approx(1.0)
        np.testing.assert_allclose(buffers.next.u.to_numpy()[0, 0, 0], U_IN, atol=1e-7)
        buffers.release()

    @pytest.mark.parametrize("node", [SOLID, OUTLET])
    def test_passthrough(self, stage, node):
        """測試 Solid / Outlet 節點原樣複製"""
        rng = np.random.default_rng(11)
        f = rng.random((Q_3D, 1, 1, 1)).astype(np.float32)
        buffers = make_buffers([[[node]]], f)
        buffers.current.rho.from_numpy(np.full((1, 1, 1), 0.7, dtype=np.float32))
        buffers.current.u.from_numpy(np.array([[[[0.01, 0.02, 0.03]]]], dtype=np.float32))

        stage.apply(buffers.current, buffers.next)
        np.testing.assert_array_equal(buffers.next.f.to_numpy(), f)
        assert buffers.next.rho.to_numpy()[0, 0, 0] == pytest.approx(0.7)
        np.testing.assert_allclose(buffers.next.u.to_numpy()[0, 0, 0], [0.01, 0.02, 0.03])
        buffers.release()

    def test_node_type_copied(self, stage):
        node_types = np.array([FLUID, SOLID, INLET, OUTLET], dtype=np.uint8).reshape(4, 1, 1)
        buffers = make_buffers(node_types, uniform(WEIGHTS_3D, (4, 1, 1)))
        buffers.next.node_type.fill(0)
        stage.apply(buffers.current, buffers.next)
        np.testing.assert_array_equal(buffers.next.node_types_numpy(), node_types)
        buffers.release()
