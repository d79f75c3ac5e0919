from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, model_validator


def verbosity_level(verbosity: int) -> int:
    """Map a verbosity setting to a logging level.

    0 keeps warnings only, 1 adds progress and snapshot messages, 2 and above
    add per-tensor debug output.
    """
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


class ImatrixConfig(BaseModel):
    """Run configuration for collection, checkpointing and evaluation."""

    model_config = ConfigDict(extra="forbid", strict=True)

    out_file: str = "imatrix.dat"
    output_frequency: int = Field(default=10, ge=1)
    save_frequency: int = Field(default=0, ge=0)
    verbosity: int = Field(default=1, ge=0)
    process_output: bool = False
    output_tensor_name: str = "output.weight"
    min_rows: int = Field(default=16, ge=1)
    n_ctx: int = Field(default=512, ge=2)
    n_batch: int = Field(default=512, ge=1)
    n_chunks: int = -1
    skip_chunks: int = Field(default=0, ge=0)
    compute_ppl: bool = True
    compute_lim: bool = False
    prompt_file: str = ""
    in_files: list[str] = Field(default_factory=list)
    min_fraction_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    workers: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _clamp_batch(self) -> ImatrixConfig:
        if self.n_batch > self.n_ctx:
            self.n_batch = self.n_ctx
        return self
