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

import torch

# Adam 保存的逐元素状态, max_exp_avg_sq 只有 amsgrad=True 时才有
MOMENT_KEYS = ("exp_avg", "exp_avg_sq", "max_exp_avg_sq")

def get_param_group(optimizer, name):
    for group in optimizer.param_groups:
        if group["name"] == name:
            assert len(group["params"]) == 1
            return group
    raise KeyError("No parameter group named '{}'".format(name))

def reset_adam_state_at_indices(optimizer, indices, name):
    """
    把名为`name`的参数组在`indices`这些行上的一阶/二阶动量清零, 其他行和step计数不变。
    还没有执行过optimizer.step() (没有状态) 时什么都不做。

    :param optimizer: torch.optim.Adam
    :param indices: (S,) 行下标
    :param name: 参数组名称
    """
    group = get_param_group(optimizer, name)
    stored_state = optimizer.state.get(group["params"][0], None)
    if not stored_state:
        return

    for key in MOMENT_KEYS:
        if key in stored_state:
            stored_state[key][indices] = 0

def extend_adam_state(stored_state, new_shape):
    """
    在动量的末尾拼上形状为`new_shape`的全零行, 返回新的状态字典, step计数保持不变。

    旧的状态需要调用方从optimizer.state中删掉, 再以新参数张量为键放回去,
    因为optimizer.state是按参数张量本身索引的。

    :param stored_state: 旧参数对应的Adam状态
    :param new_shape: 新增行的形状, (n_new, *param.shape[1:])
    :return: 新的状态字典
    """
    new_state = dict(stored_state)
    zeros_to_add = torch.zeros(new_shape, dtype=stored_state["exp_avg"].dtype,
                               device=stored_state["exp_avg"].device)
    for key in MOMENT_KEYS:
        if key in stored_state:
            new_state[key] = torch.cat((stored_state[key], zeros_to_add), dim=0)
    return new_state
