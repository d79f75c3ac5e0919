from __future__ import annotations

import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from actlens.models import PerplexityEstimate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogSoftmaxResult:
    log_softmax: float
    logit: float
    prob: float


@dataclass(frozen=True)
class LogLikelihoodSums:
    """Negative log-likelihood sum and sum of squares over a window."""

    nll: float
    nll2: float


def log_softmax(logits: NDArray[np.float32], token: int) -> LogSoftmaxResult:
    """Numerically stable log-softmax of *token* within one row of logits."""
    max_logit = logits.max()
    sum_exp = float(np.exp(logits - max_logit).sum(dtype=np.float64))
    shifted = float(logits[token] - max_logit)
    return LogSoftmaxResult(
        log_softmax=shifted - math.log(sum_exp),
        logit=float(logits[token]),
        prob=math.exp(shifted) / sum_exp,
    )


def default_worker_count() -> int:
    return max(1, os.cpu_count() or 1)


class LogLikelihoodReducer:
    """Reduce per-token log-likelihoods over a window of logits in parallel.

    ``worker_count - 1`` pool threads join the calling thread.  Rows are
    claimed from a shared counter; each worker keeps local sums and folds
    them into the totals once, when the counter is exhausted.
    """

    def __init__(self, worker_count: int | None = None) -> None:
        self._worker_count = max(1, worker_count or default_worker_count())

    @property
    def worker_count(self) -> int:
        return self._worker_count

    def reduce(
        self,
        logits: NDArray[np.float32],
        targets: NDArray[np.integer],
        logit_out: NDArray[np.float32],
        prob_out: NDArray[np.float32],
    ) -> LogLikelihoodSums:
        logits = np.asarray(logits, dtype=np.float32)
        targets = np.asarray(targets)
        if logits.ndim != 2:
            raise ValueError("logits must be a 2-D (rows, vocab) array")
        n_rows, n_vocab = logits.shape
        if targets.shape != (n_rows,):
            raise ValueError(
                f"Expected {n_rows} target tokens, got shape {targets.shape}"
            )
        if logit_out.shape[0] < n_rows or prob_out.shape[0] < n_rows:
            raise ValueError("Output arrays are shorter than the logits window")
        if n_rows and (targets.min() < 0 or targets.max() >= n_vocab):
            raise ValueError("Target token id outside the vocabulary")

        lock = threading.Lock()
        counter = 0
        totals = [0.0, 0.0]

        def drain() -> None:
            nonlocal counter
            local_nll = 0.0
            local_nll2 = 0.0
            while True:
                with lock:
                    row = counter
                    counter += 1
                    if row >= n_rows:
                        totals[0] += local_nll
                        totals[1] += local_nll2
                        return
                result = log_softmax(logits[row], int(targets[row]))
                value = -result.log_softmax
                local_nll += value
                local_nll2 += value * value
                logit_out[row] = result.logit
                prob_out[row] = result.prob

        helpers = min(self._worker_count, max(n_rows, 1)) - 1
        if helpers > 0:
            with ThreadPoolExecutor(max_workers=helpers) as pool:
                futures = [pool.submit(drain) for _ in range(helpers)]
                drain()
                for future in futures:
                    future.result()
        else:
            drain()

        logger.debug(
            "Reduced %d rows with %d threads: nll=%.6f.", n_rows, helpers + 1, totals[0]
        )
        return LogLikelihoodSums(nll=totals[0], nll2=totals[1])


class PerplexityTracker:
    """Cumulative perplexity across evaluated chunks."""

    def __init__(self) -> None:
        self._count = 0
        self._nll = 0.0
        self._nll2 = 0.0

    @property
    def count(self) -> int:
        return self._count

    def add(self, sums: LogLikelihoodSums, n_rows: int) -> None:
        self._nll += sums.nll
        self._nll2 += sums.nll2
        self._count += n_rows

    def current(self) -> float:
        if self._count == 0:
            raise ValueError("No tokens evaluated yet.")
        return math.exp(self._nll / self._count)

    def finalize(self) -> PerplexityEstimate:
        if self._count == 0:
            raise ValueError("No tokens evaluated yet.")
        nll = self._nll / self._count
        nll2 = self._nll2 / self._count
        ppl = math.exp(nll)
        variance = nll2 - nll * nll
        stderr: float | None = None
        if variance > 0 and self._count > 1:
            stderr = math.sqrt(variance / (self._count - 1)) * ppl
        else:
            logger.warning("Unexpected negative standard deviation of log(prob).")
        return PerplexityEstimate(ppl=ppl, stderr=stderr, token_count=self._count)
