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
import numpy as np
from utils.general_utils import inverse_sigmoid, build_covariance
from torch import nn
import os
from utils.system_utils import mkdir_p
from plyfile import PlyData, PlyElement
from scipy.spatial import cKDTree
from utils.sh_utils import RGB2SH
from utils.graphics_utils import BasicPointCloud

# 优化器参数组名称 -> 成员变量, 顺序就是参数组的顺序
FIELD_NAMES = {
    "means": "_means",
    "sh0": "_sh0",
    "shN": "_shN",
    "scaling": "_scaling",
    "rotation": "_rotation",
    "opacity": "_opacity",
}

class SplatData:

    def setup_functions(self):
        """
        定义各个参数的激活函数, 存储的都是激活前的原始值。
        """
        self.scaling_activation = torch.exp   # 用exp保证尺度为正
        self.scaling_inverse_activation = torch.log

        self.covariance_activation = build_covariance

        self.opacity_activation = torch.sigmoid   # 不透明度在0到1之间
        self.inverse_opacity_activation = inverse_sigmoid

        # 只有单位四元数才表示旋转
        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree : int, scene_scale : float = 1.0, data_device = "cuda"):
        """
        :param sh_degree: 球谐函数的最大阶数
        :param scene_scale: 场景尺度, 位置的学习率要乘上这个
        :param data_device: 参数所在的设备
        """
        self.active_sh_degree = 0   # 当前使用的球谐阶数, 训练中通过increment_sh_degree()逐步增加
        self.max_sh_degree = sh_degree
        self.scene_scale = scene_scale
        self.data_device = data_device

        # 每个高斯一行, 六个张量的第0维始终相同
        self._means = torch.empty(0)      # 中心位置 (N, 3)
        self._sh0 = torch.empty(0)        # 球谐的直流分量 (N, 1, 3)
        self._shN = torch.empty(0)        # 其余球谐系数 (N, 15, 3)
        self._scaling = torch.empty(0)    # log尺度 (N, 3)
        self._rotation = torch.empty(0)   # 四元数, 未归一化 (N, 4)
        self._opacity = torch.empty(0)    # sigmoid之前的不透明度 (N, 1)

        self.setup_functions()

    def capture(self):
        return (
            self.active_sh_degree,
            self._means,
            self._sh0,
            self._shN,
            self._scaling,
            self._rotation,
            self._opacity,
            self.scene_scale,
        )

    def restore(self, model_args):
        (self.active_sh_degree,
        self._means,
        self._sh0,
        self._shN,
        self._scaling,
        self._rotation,
        self._opacity,
        self.scene_scale) = model_args

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_means(self):
        return self._means

    @property
    def get_features(self):
        # (N, 16, 3)
        return torch.cat((self._sh0, self._shN), dim=1)

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    @property
    def means(self):
        return self._means

    @property
    def sh0(self):
        return self._sh0

    @property
    def shN(self):
        return self._shN

    @property
    def scaling_raw(self):
        return self._scaling

    @property
    def rotation_raw(self):
        return self._rotation

    @property
    def opacity_raw(self):
        return self._opacity

    def get_covariance(self, scaling_modifier = 1):
        # (N, 3, 3)
        return self.covariance_activation(self.get_scaling, self._rotation, scaling_modifier)

    def size(self):
        return self._means.shape[0]

    def increment_sh_degree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1

    def named_parameters(self):
        """
        按优化器参数组的顺序返回 (名称, 张量)。
        """
        return [(name, getattr(self, attr)) for name, attr in FIELD_NAMES.items()]

    def replace_fields(self, tensors_dict):
        """
        一次性替换若干个参数张量。替换之后所有字段的行数必须一致, 否则模型就乱了。

        :param tensors_dict: 参数组名称 -> 新张量
        """
        for name, tensor in tensors_dict.items():
            setattr(self, FIELD_NAMES[name], tensor)

        sizes = {name: tensor.shape[0] for name, tensor in self.named_parameters()}
        assert len(set(sizes.values())) == 1, "Fields out of alignment: {}".format(sizes)

    def create_from_pcd(self, pcd : BasicPointCloud, scene_scale : float, init_opacity : float = 0.5, init_scaling : float = 1.0):
        """
        从点云初始化模型参数。

        :param pcd: 点云, 包含点的位置和颜色 (颜色范围0到1)
        :param scene_scale: 场景尺度
        :param init_opacity: 初始不透明度
        :param init_scaling: 初始尺度相对最近邻距离的倍数
        """
        self.scene_scale = scene_scale
        points = np.asarray(pcd.points, dtype=np.float32)
        num_points = points.shape[0]

        fused_point_cloud = torch.tensor(points).float().to(self.data_device)
        # RGB转成球谐的直流分量, 其余系数先置0
        fused_color = RGB2SH(torch.tensor(np.asarray(pcd.colors)).float().to(self.data_device))
        features = torch.zeros((num_points, 3, (self.max_sh_degree + 1) ** 2)).float().to(self.data_device)
        features[:, :3, 0 ] = fused_color

        print("Number of points at initialisation : ", num_points)

        # 每个点到最近3个邻居的平均距离平方, 作为初始尺度
        if num_points > 1:
            k = min(4, num_points)
            dists, _ = cKDTree(points).query(points, k=k)
            dist2 = torch.from_numpy((dists[:, 1:] ** 2).mean(axis=1)).float().to(self.data_device)
        else:
            dist2 = torch.ones((num_points,), device=self.data_device)
        dist2 = torch.clamp_min(dist2, 0.0000001)
        # 尺度的激活函数是exp, 所以存的是ln(scale), 三个方向初始值相同
        scales = torch.log(torch.sqrt(dist2) * init_scaling)[...,None].repeat(1, 3)

        # 单位四元数, 即没有旋转
        rots = torch.zeros((num_points, 4), device=self.data_device)
        rots[:, 0] = 1

        opacities = self.inverse_opacity_activation(init_opacity * torch.ones((num_points, 1), dtype=torch.float, device=self.data_device))

        self._means = nn.Parameter(fused_point_cloud.requires_grad_(True))
        self._sh0 = nn.Parameter(features[:,:,0:1].transpose(1, 2).contiguous().requires_grad_(True))
        self._shN = nn.Parameter(features[:,:,1:].transpose(1, 2).contiguous().requires_grad_(True))
        self._scaling = nn.Parameter(scales.requires_grad_(True))
        self._rotation = nn.Parameter(rots.requires_grad_(True))
        self._opacity = nn.Parameter(opacities.requires_grad_(True))

    def _ply_layout(self):
        """
        ply文件里每个字段对应的 (属性名前缀, 列数), 顺序就是写文件的顺序。
        法线那一列只是为了兼容常见的查看器, 读的时候忽略。
        """
        return [
            ("xyz", 3),
            ("normal", 3),
            ("f_dc_", self._sh0.shape[1] * self._sh0.shape[2]),
            ("f_rest_", self._shN.shape[1] * self._shN.shape[2]),
            ("opacity", 1),
            ("scale_", self._scaling.shape[1]),
            ("rot_", self._rotation.shape[1]),
        ]

    def construct_list_of_attributes(self):
        names = []
        for prefix, width in self._ply_layout():
            if prefix == "xyz":
                names += ['x', 'y', 'z']
            elif prefix == "normal":
                names += ['nx', 'ny', 'nz']
            elif prefix == "opacity":
                names.append('opacity')
            else:
                names += ['{}{}'.format(prefix, i) for i in range(width)]
        return names

    def save_ply(self, path):
        mkdir_p(os.path.dirname(path))

        # 球谐系数按通道优先展平, (N, K, 3) -> (N, 3*K)
        columns = [
            self._means.detach().cpu().numpy(),
            np.zeros((self.size(), 3), dtype=np.float32),
            self._sh0.detach().transpose(1, 2).flatten(start_dim=1).cpu().numpy(),
            self._shN.detach().transpose(1, 2).flatten(start_dim=1).cpu().numpy(),
            self._opacity.detach().reshape(-1, 1).cpu().numpy(),
            self._scaling.detach().cpu().numpy(),
            self._rotation.detach().cpu().numpy(),
        ]
        attributes = np.concatenate(columns, axis=1).astype(np.float32)

        names = self.construct_list_of_attributes()
        assert attributes.shape[1] == len(names)
        vertices = np.empty(attributes.shape[0], dtype=[(name, 'f4') for name in names])
        for i, name in enumerate(names):
            vertices[name] = attributes[:, i]
        PlyData([PlyElement.describe(vertices, 'vertex')]).write(path)

    def load_ply(self, path):
        vertex = PlyData.read(path)['vertex']

        def read_columns(prefix):
            # 取出 prefix0, prefix1, ... 这些属性, 按编号排序后拼成 (N, K)
            names = [p.name for p in vertex.properties if p.name.startswith(prefix)]
            names.sort(key=lambda name: int(name[len(prefix):]))
            if not names:
                return np.zeros((vertex.count, 0), dtype=np.float32)
            return np.stack([np.asarray(vertex[name]) for name in names], axis=1)

        def to_param(array):
            return nn.Parameter(torch.tensor(array, dtype=torch.float, device=self.data_device).requires_grad_(True))

        num_coeffs = (self.max_sh_degree + 1) ** 2
        means = np.stack([np.asarray(vertex[axis]) for axis in ('x', 'y', 'z')], axis=1)
        f_dc = read_columns("f_dc_")
        f_rest = read_columns("f_rest_")
        assert f_rest.shape[1] == 3 * (num_coeffs - 1), \
            "Expected {} f_rest_ properties for SH degree {}, got {}".format(3 * (num_coeffs - 1), self.max_sh_degree, f_rest.shape[1])

        # (N, 3*K) -> (N, K, 3)
        sh0 = f_dc.reshape(len(means), 3, 1).transpose(0, 2, 1)
        shN = f_rest.reshape(len(means), 3, num_coeffs - 1).transpose(0, 2, 1)

        self.replace_fields({
            "means": to_param(means),
            "sh0": to_param(np.ascontiguousarray(sh0)),
            "shN": to_param(np.ascontiguousarray(shN)),
            "scaling": to_param(read_columns("scale_")),
            "rotation": to_param(read_columns("rot_")),
            "opacity": to_param(np.asarray(vertex["opacity"])[:, np.newaxis]),
        })
        self.active_sh_degree = self.max_sh_degree
