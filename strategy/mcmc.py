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

from contextlib import nullcontext
import copy
import torch
from torch import nn
from torch.optim.lr_scheduler import MultiplicativeLR
from scene.splat_data import SplatData
from utils.reloc_utils import init_binomial_coefficients, multinomial_sample, compute_relocation_ratios, compute_relocation
from utils.optim_utils import get_param_group, reset_adam_state_at_indices, extend_adam_state

# 写回不透明度时离1留一点余量, 否则logit会是inf
MIN_OPACITY_CLAMP = 1e-7

def normalize_opacity_shape(opacity):
    # (N, 1) -> (N,)
    return opacity.squeeze(-1) if opacity.dim() == 2 and opacity.shape[1] == 1 else opacity

class MCMC:
    """
    3DGS-MCMC 密度控制策略: 把不透明度过低的高斯重新放到存活的高斯上,
    按5%的速度增加高斯数量直到上限, 并且每次迭代都往位置上加噪声。
    """

    NOISE_LR = 5e5
    NOISE_K = 100.0
    NOISE_X0 = 0.995
    BINOMIAL_MAX_N = 51

    def __init__(self, splat_data : SplatData, lock = None):
        """
        :param splat_data: 高斯模型, 所有权仍归调用方
        :param lock: 外部的互斥锁 (例如渲染线程用的), 修改模型张量时持有
        """
        self._splat_data = splat_data
        self._lock = lock if lock is not None else nullcontext()
        self._params = None
        self.optimizer = None
        self.scheduler = None
        self._binoms = None

    def get_model(self):
        return self._splat_data

    def initialize(self, optim_params):
        """
        把所有参数搬到设备上并打开梯度, 创建优化器、学习率调度器和二项式系数表。
        """
        self._params = optim_params
        dev = self._splat_data.data_device

        self._splat_data.replace_fields({
            name: nn.Parameter(tensor.detach().to(dev).requires_grad_(True))
            for name, tensor in self._splat_data.named_parameters()
        })

        self._binoms = init_binomial_coefficients(self.BINOMIAL_MAX_N, dev)

        splats = self._splat_data
        l = [
            {'params': [splats.means], 'lr': optim_params.means_lr * splats.scene_scale, "name": "means"},
            {'params': [splats.sh0], 'lr': optim_params.shs_lr, "name": "sh0"},
            {'params': [splats.shN], 'lr': optim_params.shs_lr / 20.0, "name": "shN"},
            {'params': [splats.scaling_raw], 'lr': optim_params.scaling_lr, "name": "scaling"},
            {'params': [splats.rotation_raw], 'lr': optim_params.rotation_lr, "name": "rotation"},
            {'params': [splats.opacity_raw], 'lr': optim_params.opacity_lr, "name": "opacity"}
        ]
        self.optimizer = torch.optim.Adam(l, lr=0.0, eps=1e-15)

        # 只有位置的学习率指数衰减, 整个训练过程衰减到原来的1%, 其余参数组保持不变
        gamma = 0.01 ** (1.0 / optim_params.iterations)
        self.scheduler = MultiplicativeLR(
            self.optimizer,
            lr_lambda=[(lambda _: gamma) if group["name"] == "means" else (lambda _: 1.0)
                       for group in self.optimizer.param_groups])

    def _check_initialized(self):
        if self.optimizer is None:
            raise RuntimeError("initialize() must be called before step()/post_backward()")

    def is_refining(self, iteration):
        return (self._params.start_refine < iteration < self._params.stop_refine
                and iteration % self._params.refine_every == 0)

    def _update_opacity_raw(self, indices, new_opacities):
        opacity_raw = self._splat_data.opacity_raw
        clamped = torch.clamp(new_opacities, self._params.min_opacity, 1.0 - MIN_OPACITY_CLAMP)
        if opacity_raw.dim() == 2:
            opacity_raw[indices] = torch.logit(clamped).unsqueeze(-1)
        else:
            opacity_raw[indices] = torch.logit(clamped)

    def _relocate_sampled(self, sampled_idxs, opacities):
        """
        对被采样的高斯做拆分, 新的不透明度和尺度直接写回它们自己所在的行。
        """
        ratios = compute_relocation_ratios(sampled_idxs, opacities.shape[0], self._binoms.shape[0])
        new_opacities, new_scales = compute_relocation(
            opacities[sampled_idxs],
            self._splat_data.get_scaling[sampled_idxs],
            ratios,
            self._binoms,
            self._binoms.shape[0])

        self._update_opacity_raw(sampled_idxs, new_opacities)
        self._splat_data.scaling_raw[sampled_idxs] = torch.log(new_scales)

    @torch.no_grad()
    def relocate_gs(self):
        """
        把不透明度 <= min_opacity 的"死"高斯搬到按不透明度采样出来的存活高斯上。
        这里不加锁, 直接调用时 (不经过post_backward) 调用方要自己持有外部锁。

        :return: 处理的死高斯个数
        """
        opacities = normalize_opacity_shape(self._splat_data.get_opacity)
        dead_mask = opacities <= self._params.min_opacity
        dead_indices = dead_mask.nonzero(as_tuple=True)[0]
        if dead_indices.numel() == 0:
            return 0

        alive_indices = (~dead_mask).nonzero(as_tuple=True)[0]
        if alive_indices.numel() == 0:
            return 0

        # 在存活的高斯中按不透明度有放回地采样, 个数与死高斯相同
        probs = opacities[alive_indices]
        sampled_idxs_local = multinomial_sample(probs, dead_indices.numel(), replacement=True)
        sampled_idxs = alive_indices[sampled_idxs_local]

        self._relocate_sampled(sampled_idxs, opacities)

        # 死高斯的所有属性都拷贝成 (已更新的) 采样高斯
        for _, param in self._splat_data.named_parameters():
            param[dead_indices] = param[sampled_idxs]

        # 这些行的值发生了突变, 之前累积的动量已经没有意义
        for group in self.optimizer.param_groups:
            reset_adam_state_at_indices(self.optimizer, sampled_idxs, group["name"])

        return dead_indices.numel()

    @torch.no_grad()
    def add_new_gs(self):
        """
        高斯数量每次增加5%, 直到max_cap。新的高斯是按不透明度采样出来的高斯的拷贝,
        被采样的高斯先做拆分, 再把拆分后的值追加到末尾。
        这里不加锁, 直接调用时调用方要自己持有外部锁, 否则渲染线程可能看到只扩了一半的参数。

        :return: 新增的高斯个数
        """
        if self.optimizer is None:
            print("Warning: add_new_gs called but optimizer not initialized")
            return 0

        current_n = self._splat_data.size()
        n_target = min(self._params.max_cap, round(1.05 * current_n))
        n_new = max(0, n_target - current_n)
        if n_new == 0:
            return 0

        opacities = normalize_opacity_shape(self._splat_data.get_opacity)
        sampled_idxs = multinomial_sample(opacities.flatten(), n_new, replacement=True)

        # 先更新原有的高斯
        self._relocate_sampled(sampled_idxs, opacities)

        new_tensors = {}
        for group in self.optimizer.param_groups:
            name = group["name"]
            old_param = group["params"][0]
            concatenated = nn.Parameter(torch.cat((old_param, old_param[sampled_idxs]), dim=0).requires_grad_(True))

            # optimizer.state 以参数张量为键, 换了张量就要把状态挪到新的键下面
            stored_state = self.optimizer.state.get(old_param, None)
            if stored_state is not None:
                del self.optimizer.state[old_param]
            group["params"][0] = concatenated
            if stored_state:
                new_shape = (n_new,) + tuple(concatenated.shape[1:])
                self.optimizer.state[concatenated] = extend_adam_state(stored_state, new_shape)

            new_tensors[name] = concatenated

        self._splat_data.replace_fields(new_tensors)
        return n_new

    @torch.no_grad()
    def inject_noise(self):
        """
        给位置加上按协方差变换过的高斯噪声, 越透明的高斯噪声越大。
        """
        opacities = normalize_opacity_shape(self._splat_data.get_opacity)
        covars = self._splat_data.get_covariance()

        # 不透明度接近0时权重接近1, 接近1时权重接近0
        op_sigmoid = torch.sigmoid(self.NOISE_K * ((1.0 - opacities) - self.NOISE_X0))

        current_lr = get_param_group(self.optimizer, "means")["lr"]

        means = self._splat_data.means
        noise = torch.randn_like(means) * op_sigmoid.unsqueeze(-1) * current_lr * self.NOISE_LR
        noise = torch.bmm(covars, noise.unsqueeze(-1)).squeeze(-1)
        means.add_(noise)

    @torch.no_grad()
    def post_backward(self, iteration, render_output=None):
        """
        每次迭代反向传播之后、step()之前调用。
        """
        self._check_initialized()

        with self._lock:
            # 每隔一段时间提升一次球谐阶数
            if iteration % self._params.sh_degree_interval == 0:
                self._splat_data.increment_sh_degree()

            if self.is_refining(iteration):
                self.relocate_gs()
                self.add_new_gs()
                torch.cuda.empty_cache()

            self.inject_noise()

    def step(self, iteration):
        self._check_initialized()
        if iteration < self._params.iterations:
            with self._lock:
                self.optimizer.step()
            self.optimizer.zero_grad(set_to_none=True)
            self.scheduler.step()

    def capture(self):
        self._check_initialized()
        return (
            self._splat_data.capture(),
            self.optimizer.state_dict(),
            self.scheduler.state_dict(),
        )

    def restore(self, model_args, optim_params):
        """
        从capture()的结果恢复模型、优化器和调度器。
        capture()返回的是正在训练的张量本身, 这里要拷贝一份, 否则两个模型共用同一块显存。
        """
        splat_args, opt_dict, sched_dict = model_args
        self._splat_data.restore(tuple(
            arg.detach().clone() if torch.is_tensor(arg) else arg for arg in splat_args))
        self.initialize(optim_params)
        self.optimizer.load_state_dict(copy.deepcopy(opt_dict))
        self.scheduler.load_state_dict(sched_dict)
