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

import math
import torch

# torch.multinomial 能处理的类别数上限
MULTINOMIAL_LIMIT = 1 << 24

def init_binomial_coefficients(n_max, device="cuda"):
    """
    预计算二项式系数表, binoms[n, k] = C(n, k), 只有 k <= n 的位置有值, 其余为0。

    :param n_max: 表的边长, 也是复制倍数 ratio 的上限
    :return: (n_max, n_max) 的 float32 张量
    """
    binoms = torch.zeros((n_max, n_max), dtype=torch.float32)
    for n in range(n_max):
        for k in range(n + 1):
            binoms[n, k] = math.comb(n, k)
    return binoms.to(device)

def multinomial_sample(weights, n, replacement=True, limit=MULTINOMIAL_LIMIT):
    """
    按权重有放回地采样 n 个下标, 概率正比于权重。

    权重个数不超过 limit 时直接用 torch.multinomial;
    超过时 torch.multinomial 会报错, 改为在CPU上做前缀和 + 二分查找, 分布是一样的。

    :param weights: (M,) 非负权重
    :param n: 采样个数
    :return: (n,) long 张量, 与 weights 在同一个设备上
    """
    num_elements = weights.shape[0]
    if num_elements <= limit:
        return torch.multinomial(weights, n, replacement=replacement)

    weights_normalized = weights / weights.sum()
    # 前缀和用 float64, 避免上千万个元素累加后末尾明显小于1
    cumsum = weights_normalized.detach().cpu().double().cumsum(0)
    u = torch.rand(n, dtype=torch.float64)
    # 第一个满足 cumsum[idx] >= u 的位置
    sampled_idxs = torch.searchsorted(cumsum, u, side="left")
    sampled_idxs = sampled_idxs.clamp_(max=num_elements - 1)
    return sampled_idxs.to(weights.device)

def compute_relocation_ratios(sampled_idxs, num_elements, n_max):
    """
    每个被采样的高斯需要分成几份: 它被采到的次数 + 1 (自己本身)。

    :param sampled_idxs: (S,) 被采样的全局下标, 可能有重复
    :param num_elements: 当前高斯总数 N
    :param n_max: 二项式系数表的大小, ratio 会被截断到 [1, n_max]
    :return: (S,) int32, 与 sampled_idxs 一一对应
    """
    ratios = torch.zeros(num_elements, dtype=torch.float32, device=sampled_idxs.device)
    ratios.index_add_(0, sampled_idxs, torch.ones_like(sampled_idxs, dtype=torch.float32))
    ratios = ratios[sampled_idxs] + 1
    return torch.clamp(ratios, 1, n_max).int().contiguous()

def compute_relocation(opacity_old, scale_old, N, binoms, n_max):
    """
    把一个高斯拆成 N 份后的新不透明度和新尺度, 使 N 份叠加起来的贡献与原来的一个高斯相同
    (3D Gaussian Splatting as Markov Chain Monte Carlo, Eq. 9):

        o' = 1 - (1 - o)^(1/N)
        s' = o / (sum_{i=1..N} sum_{k=0..i-1} C(i-1, k) (-1)^k / sqrt(k+1) o'^(k+1)) * s

    交错级数在 float32 下误差较大, 这里用 float64 计算后再转回原精度。

    :param opacity_old: (M,) 激活后的不透明度, 范围(0, 1)
    :param scale_old: (M, 3) 激活后的尺度, 大于0
    :param N: (M,) 复制倍数, 会被截断到 [1, n_max - 1]
    :param binoms: init_binomial_coefficients(n_max) 的结果
    :return: (new_opacity (M,), new_scale (M, 3))
    """
    N = N.clamp(min=1, max=n_max - 1).long()
    opacity = opacity_old.double()

    new_opacity = 1.0 - torch.pow(1.0 - opacity, 1.0 / N.double())

    # coeffs[i - 1, k] = C(i - 1, k) * (-1)^k / sqrt(k + 1), i = 1 .. n_max - 1
    k = torch.arange(n_max - 1, dtype=torch.float64, device=opacity.device)
    signs = 1.0 - 2.0 * torch.remainder(k, 2)
    coeffs = binoms[:n_max - 1, :n_max - 1].to(opacity.device).double() * (signs / torch.sqrt(k + 1))[None, :]

    # inner[m, i - 1] = sum_k coeffs[i - 1, k] * o'_m^(k + 1)
    powers = torch.pow(new_opacity[:, None], (k + 1)[None, :])
    inner = powers @ coeffs.T

    # 只累加 i <= N 的项
    i = torch.arange(1, n_max, device=opacity.device)
    mask = (i[None, :] <= N[:, None]).double()
    denom_sum = (inner * mask).sum(dim=1)

    coeff = opacity / denom_sum
    new_scale = coeff[:, None] * scale_old.double()
    return new_opacity.to(opacity_old.dtype), new_scale.to(scale_old.dtype)
