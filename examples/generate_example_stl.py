# generate_example_stl.py - 圓柱障礙物範例幾何
"""
產生 example_config.json 使用的圓柱障礙物STL

圓柱半徑 0.1、高 0.3，中心位於 (0.3, 0.25, 0.25)，
置於 1.0 x 0.5 x 0.5 的計算域中，繞流後形成尾流結構。
"""

import argparse
from typing import Sequence

import trimesh


def generate_cylinder_stl(filename: str, radius: float = 0.1, height: float = 0.3,
                          center: Sequence[float] = (0.3, 0.25, 0.25),
                          sections: int = 20) -> trimesh.Trimesh:
    """建立沿 z 軸的封閉圓柱並輸出為STL"""
    mesh = trimesh.creation.cylinder(radius=radius, height=height, sections=sections)
    mesh.apply_translation(center)
    mesh.export(filename)
    return mesh


def main():
    parser = argparse.ArgumentParser(description="Generate the example cylinder obstacle STL")
    parser.add_argument("--output", default="example_cylinder.stl", help="STL output path")
    parser.add_argument("--radius", type=float, default=0.1)
    parser.add_argument("--height", type=float, default=0.3)
    parser.add_argument("--center", type=float, nargs=3, default=[0.3, 0.25, 0.25])
    args = parser.parse_args()

    mesh = generate_cylinder_stl(args.output, args.radius, args.height, args.center)
    print(f"✅ 已產生 {args.output}: {len(mesh.faces)} 個三角面")
    print(f"   圓柱半徑 {args.radius}, 高 {args.height}, 中心 {tuple(args.center)}")
    print("   可搭配 example_config.json 使用: lbm27 example_config.json example_cylinder.stl")


if __name__ == "__main__":
    main()
