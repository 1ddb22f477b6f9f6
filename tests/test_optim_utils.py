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

import pytest
import torch
from torch import nn
from utils.optim_utils import extend_adam_state, get_param_group, reset_adam_state_at_indices


def make_optimizer(amsgrad=False):
    xyz = nn.Parameter(torch.randn(6, 3))
    opacity = nn.Parameter(torch.randn(6, 1))
    optimizer = torch.optim.Adam([
        {"params": [xyz], "lr": 0.01, "name": "means"},
        {"params": [opacity], "lr": 0.05, "name": "opacity"},
    ], lr=0.0, eps=1e-15, amsgrad=amsgrad)
    return optimizer, xyz, opacity


def take_step(optimizer, *params):
    loss = sum((param ** 2).sum() for param in params)
    loss.backward()
    optimizer.step()
    optimizer.zero_grad(set_to_none=True)


def test_get_param_group_by_name():
    optimizer, xyz, _ = make_optimizer()
    assert get_param_group(optimizer, "means")["params"][0] is xyz
    with pytest.raises(KeyError):
        get_param_group(optimizer, "colors")


def test_reset_without_state_is_noop():
    optimizer, xyz, _ = make_optimizer()
    reset_adam_state_at_indices(optimizer, torch.tensor([0, 1]), "means")
    assert len(optimizer.state) == 0


@pytest.mark.parametrize("amsgrad", [False, True])
def test_reset_zeroes_only_given_rows(amsgrad):
    optimizer, xyz, opacity = make_optimizer(amsgrad)
    take_step(optimizer, xyz, opacity)

    state = optimizer.state[xyz]
    before = {key: value.clone() for key, value in state.items()}
    indices = torch.tensor([1, 3])
    reset_adam_state_at_indices(optimizer, indices, "means")

    keys = ["exp_avg", "exp_avg_sq"] + (["max_exp_avg_sq"] if amsgrad else [])
    keep = torch.tensor([0, 2, 4, 5])
    for key in keys:
        assert torch.all(state[key][indices] == 0)
        assert torch.equal(state[key][keep], before[key][keep])
    assert torch.equal(torch.as_tensor(state["step"]), torch.as_tensor(before["step"]))

    # 其他参数组不受影响
    assert torch.all(optimizer.state[opacity]["exp_avg"][indices] != 0)


@pytest.mark.parametrize("amsgrad", [False, True])
def test_extend_appends_zero_rows(amsgrad):
    optimizer, xyz, opacity = make_optimizer(amsgrad)
    take_step(optimizer, xyz, opacity)
    take_step(optimizer, xyz, opacity)

    old_state = optimizer.state[xyz]
    new_state = extend_adam_state(old_state, (4, 3))

    keys = ["exp_avg", "exp_avg_sq"] + (["max_exp_avg_sq"] if amsgrad else [])
    for key in keys:
        assert new_state[key].shape == (10, 3)
        assert torch.equal(new_state[key][:6], old_state[key])
        assert torch.all(new_state[key][6:] == 0)
    assert float(new_state["step"]) == 2
    # 旧的状态没有被修改
    assert old_state["exp_avg"].shape == (6, 3)


def test_extended_state_drives_next_step():
    optimizer, xyz, opacity = make_optimizer()
    take_step(optimizer, xyz, opacity)

    group = get_param_group(optimizer, "means")
    stored_state = optimizer.state.pop(xyz)
    grown = nn.Parameter(torch.cat((xyz.detach(), torch.zeros(2, 3)), dim=0))
    group["params"][0] = grown
    optimizer.state[grown] = extend_adam_state(stored_state, (2, 3))

    take_step(optimizer, grown, opacity)
    assert optimizer.state[grown]["exp_avg"].shape == grown.shape
    assert float(optimizer.state[grown]["step"]) == 2
