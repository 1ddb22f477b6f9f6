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

from argparse import ArgumentParser, Namespace
import ast
import sys
import os

class GroupParams:
    pass

class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        """
        parser (ArgumentParser): 命令行解析器
        name (str): 参数组的名称
        fill_none (bool, optional): 是否把默认值都设为None
        """
        group = parser.add_argument_group(name)
        # 每个成员变量对应一个命令行参数, 下划线开头的还会有一个单字母的缩写
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def extract(self, args):
        """
        从全部参数中取出属于当前参数组的那些
        """
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group

class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self.sh_degree = 3
        self._source_path = ""
        self._model_path = ""
        self._white_background = False
        self.data_device = "cuda"
        self.init_opacity = 0.5
        self.init_scaling = 0.1
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        g.source_path = os.path.abspath(g.source_path)
        return g

class OptimizationParams(ParamGroup):
    def __init__(self, parser):
        self.iterations = 30_000
        # 各参数组的学习率, means_lr 还要乘上场景尺度
        self.means_lr = 0.00016
        self.shs_lr = 0.0025
        self.opacity_lr = 0.05
        self.scaling_lr = 0.005
        self.rotation_lr = 0.001
        # MCMC 密度控制
        self.min_opacity = 0.005
        self.max_cap = 1_000_000
        self.start_refine = 500
        self.stop_refine = 25_000
        self.refine_every = 100
        self.sh_degree_interval = 1000
        super().__init__(parser, "Optimization Parameters")

def parse_cfg_args(cfgfile_string):
    """
    解析保存下来的 "Namespace(a=1, b='x')" 字符串, 只接受字面量。
    """
    node = ast.parse(cfgfile_string.strip(), mode="eval").body
    if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "Namespace"):
        raise ValueError("Not a Namespace(...) string: {}".format(cfgfile_string))
    return Namespace(**{kw.arg: ast.literal_eval(kw.value) for kw in node.keywords})

def get_combined_args(parser : ArgumentParser, argv=None):
    cmdlne_string = sys.argv[1:] if argv is None else argv
    cfgfile_string = "Namespace()"
    args_cmdline = parser.parse_args(cmdlne_string)

    try:
        cfgfilepath = os.path.join(args_cmdline.model_path, "cfg_args")
        print("Looking for config file in", cfgfilepath)
        with open(cfgfilepath) as cfg_file:
            print("Config file found: {}".format(cfgfilepath))
            cfgfile_string = cfg_file.read()
    except (TypeError, FileNotFoundError):
        print("Config file not found at")
    args_cfgfile = parse_cfg_args(cfgfile_string)

    # 命令行中给出的值覆盖配置文件中的值
    merged_dict = vars(args_cfgfile).copy()
    for k,v in vars(args_cmdline).items():
        if v != None:
            merged_dict[k] = v
    return Namespace(**merged_dict)
