# main.py
"""
D3Q27 LBM 模擬主程式

    lbm27 CONFIG GEOMETRY [--arch auto|cpu|gpu] [--log-level LEVEL] [--log-file PATH]

CONFIG 為 JSON 或 YAML 設定檔，GEOMETRY 為 STL 網格或預先體素化的 .npy 節點分類。
成功結束 (收斂或達到最大迭代數) 返回 0，其餘情況返回 1。
"""

# 標準庫導入
import sys
import signal
import logging
import argparse
from typing import List, Optional

# 本地模組導入
from lbm27 import __version__
from lbm27.config import Config, ARCH_CHOICES, get_core_summary
from lbm27.error_handling import CFDError, setup_logging, handle_cfd_error
from lbm27.init import initialize_taichi_once, release_device

logger = logging.getLogger("lbm27")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lbm27",
        description="D3Q27 Lattice-Boltzmann flow solver",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("config", help="simulation configuration (.json / .yaml)")
    parser.add_argument("geometry", help="geometry mesh (.stl) or node classification (.npy)")
    parser.add_argument("--arch", choices=ARCH_CHOICES, default=None,
                        help="compute backend, overrides simulation.arch from the configuration")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", default=None, help="also write the log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def print_simulation_info(config: Config, tau: float, geometry) -> None:
    """輸出模擬參數摘要"""
    domain = config.domain
    counts = geometry.counts
    core = get_core_summary()
    logger.info(f"=== {core['model']} LBM模擬參數 ===")
    logger.info(f"速度數: Q={core['Q']}, c_s²={core['cs2']:.4f}, 速度上限={core['max_velocity_lu']:.4f}")
    logger.info(f"網格尺寸: {domain.nx} x {domain.ny} x {domain.nz} = {domain.total_nodes:,} 格點")
    logger.info(f"格點間距: dx={domain.dx}, dy={domain.dy}, dz={domain.dz}")
    logger.info(f"雷諾數: {config.physics.reynolds_number}")
    logger.info(f"入口速度: {tuple(config.physics.inlet_velocity)}")
    logger.info(f"參考密度: {config.physics.density}")
    logger.info(f"鬆弛時間: τ = {tau:.6f}")
    logger.info(f"最大迭代數: {config.simulation.max_iterations:,}")
    logger.info(f"輸出頻率: {config.output.output_frequency} ({config.output.output_format})")
    logger.info(f"節點: Fluid={counts['fluid']}, Solid={counts['solid']}, "
                f"Inlet={counts['inlet']}, Outlet={counts['outlet']}")


def run_simulation(config: Config, geometry_path: str) -> int:
    """載入幾何、執行求解器並寫出結果；返回程式結束碼"""
    # 延遲導入: Taichi 須在建立任何場之前完成初始化
    from lbm27.core.solver import SimulationParameters, SolverLoop, SolverState
    from lbm27.physics.geometry import Geometry
    from lbm27.visualization.output import VTKWriter, create_writers

    geometry = Geometry.from_file(geometry_path, config.domain)
    params = SimulationParameters.from_config(config)
    print_simulation_info(config, params.tau, geometry)

    primary, writers = create_writers(config.output)
    if isinstance(primary, VTKWriter):
        primary.write_geometry(geometry)

    solver = SolverLoop(params, geometry.node_types, geometry.spacing)
    previous_handler = signal.getsignal(signal.SIGINT)

    def _on_interrupt(signum, frame):
        logger.warning("⚠️  收到中斷信號，將在本次迭代結束後停止")
        solver.request_stop()

    try:
        for writer in writers:
            solver.add_sink(writer)
        signal.signal(signal.SIGINT, _on_interrupt)

        try:
            state = solver.run()
        except CFDError:
            if solver.state != SolverState.FAILED:
                raise
            # 求解器已記錄此錯誤
            return 1

        if isinstance(primary, VTKWriter):
            primary.write_collection()
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        solver.release()

    if state in (SolverState.CONVERGED, SolverState.MAX_ITERATIONS_REACHED):
        return 0
    logger.warning(f"⚠️  模擬未正常完成: {state.value}")
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """主程式入口"""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = Config.from_file(args.config)
        initialize_taichi_once(args.arch or config.simulation.arch)
        return run_simulation(config, args.geometry)
    except CFDError as e:
        handle_cfd_error(e)
        return 1
    finally:
        release_device()


if __name__ == "__main__":
    sys.exit(main())
