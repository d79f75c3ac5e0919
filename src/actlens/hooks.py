from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

import torch
from torch import nn
from torch.utils.hooks import RemovableHandle

from actlens.callback import GraphOperation, ImatrixCallback

logger = logging.getLogger(__name__)

_LAYERS_SEGMENT = re.compile(r"^(?:.*\.)?(?:layers|h|blocks)\.(\d+)\.")


def block_style_name(name: str) -> str:
    """Map ``model.layers.3.mlp.gate_proj.weight`` to ``blk.3.mlp.gate_proj.weight``.

    Names without a numbered layer segment are returned unchanged.
    """
    return _LAYERS_SEGMENT.sub(r"blk.\1.", name, count=1)


def register_linear_hooks(
    model: nn.Module,
    callback: ImatrixCallback,
    *,
    name_map: Callable[[str], str] | None = block_style_name,
) -> list[RemovableHandle]:
    """Feed the input of every ``nn.Linear`` in *model* to *callback*.

    Each forward call is presented as a plain matmul on ``<name>.weight``.
    Remove the returned handles to detach.
    """
    handles: list[RemovableHandle] = []
    for module_name, module in model.named_modules():
        if not isinstance(module, nn.Linear):
            continue
        weight_name = f"{module_name}.weight"
        if name_map is not None:
            weight_name = name_map(weight_name)

        def hook(
            _module: nn.Module, args: tuple[Any, ...], *, _name: str = weight_name
        ) -> None:
            if not args or not isinstance(args[0], torch.Tensor):
                return
            inp = args[0]
            callback.collect(
                GraphOperation.matmul(_name, inp, copied=not inp.is_cpu)
            )

        handles.append(module.register_forward_pre_hook(hook))
    logger.info("Registered activation hooks on %d linear modules.", len(handles))
    return handles
