#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

from argparse import ArgumentParser
import os
import pytest
from arguments import ModelParams, OptimizationParams, get_combined_args, parse_cfg_args


def test_optimization_defaults():
    parser = ArgumentParser()
    op = OptimizationParams(parser)
    args = op.extract(parser.parse_args([]))
    assert args.iterations == 30_000
    assert args.min_opacity == 0.005
    assert args.max_cap == 1_000_000
    assert (args.start_refine, args.stop_refine, args.refine_every) == (500, 25_000, 100)
    assert args.means_lr == 0.00016
    assert args.shs_lr == 0.0025
    assert args.sh_degree_interval == 1000


def test_extract_keeps_only_own_group():
    parser = ArgumentParser()
    lp = ModelParams(parser)
    op = OptimizationParams(parser)
    args = parser.parse_args(["--max_cap", "2000", "-s", "data", "--data_device", "cpu"])

    optim = op.extract(args)
    model = lp.extract(args)
    assert optim.max_cap == 2000
    assert not hasattr(optim, "source_path")
    assert model.source_path == os.path.abspath("data")
    assert model.data_device == "cpu"
    assert not hasattr(model, "max_cap")


def test_parse_cfg_args_only_accepts_literals():
    ns = parse_cfg_args("Namespace(sh_degree=2, data_device='cpu', white_background=True)\n")
    assert ns.sh_degree == 2
    assert ns.data_device == "cpu"
    assert ns.white_background is True
    with pytest.raises(ValueError):
        parse_cfg_args("__import__('os').getcwd()")
    with pytest.raises(ValueError):
        parse_cfg_args("Namespace(x=open('f'))")


def test_get_combined_args_merges_saved_config(tmp_path):
    with open(tmp_path / "cfg_args", "w") as cfg_file:
        cfg_file.write("Namespace(sh_degree=2, data_device='cpu', max_cap=123)")

    parser = ArgumentParser()
    ModelParams(parser, sentinel=True)
    args = get_combined_args(parser, ["-m", str(tmp_path), "--sh_degree", "1"])
    # 命令行给出的值优先, 没给出的用保存下来的配置
    assert args.sh_degree == 1
    assert args.data_device == "cpu"
    assert args.max_cap == 123
    assert args.model_path == str(tmp_path)
