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
import numpy as np
import pytest
import torch
from torch import nn
from arguments import OptimizationParams
from scene.splat_data import SplatData
from utils.graphics_utils import BasicPointCloud


def make_optim_params(*argv):
    parser = ArgumentParser()
    op = OptimizationParams(parser)
    return op.extract(parser.parse_args(list(argv)))


def make_splats(n, sh_degree=1, seed=0):
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(n, 3)).astype(np.float32)
    colors = rng.uniform(0.0, 1.0, size=(n, 3)).astype(np.float32)
    pcd = BasicPointCloud(points=points, colors=colors, normals=np.zeros_like(points))
    splats = SplatData(sh_degree, data_device="cpu")
    splats.create_from_pcd(pcd, scene_scale=1.0, init_opacity=0.5, init_scaling=0.1)
    return splats


def set_opacities(splats, values):
    opacities = torch.tensor(values, dtype=torch.float32)
    splats.replace_fields({"opacity": nn.Parameter(torch.logit(opacities).unsqueeze(-1))})


def touch_all_params(strategy):
    # 构造一个用到所有参数的loss, 让每个参数组都有梯度
    loss = sum(param.sum() for _, param in strategy.get_model().named_parameters())
    loss.backward()


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def optim_params():
    return make_optim_params()
