from __future__ import annotations


def filter_tensor_name(name: str) -> str:
    """Strip backend/device decoration from a raw tensor identifier.

    ``CUDA0#blk.0.attn_k.weight#0`` becomes ``blk.0.attn_k.weight``; names
    without ``#`` are returned unchanged.
    """
    _, sep, rest = name.partition("#")
    if not sep:
        return name
    inner, _, _ = rest.partition("#")
    return inner
