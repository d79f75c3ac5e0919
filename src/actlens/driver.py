from __future__ import annotations

import logging
import time
from collections.abc import Sequence

import numpy as np
from numpy.typing import NDArray
from rich.console import Console

from actlens.accumulator import CheckpointPolicy, SnapshotRequest, StatsAccumulator
from actlens.callback import ImatrixCallback
from actlens.codec import load_snapshot, snapshot_path, write_snapshot
from actlens.config import ImatrixConfig, verbosity_level
from actlens.contracts import LogitsProvider, Reporter, TensorSelector
from actlens.errors import InsufficientTokensError
from actlens.models import LayerImportanceReport, PerplexityEstimate
from actlens.perplexity import LogLikelihoodReducer, PerplexityTracker
from actlens.scoring import LayerImportanceScorer
from actlens.selectors import DefaultTensorSelector

logger = logging.getLogger(__name__)


def _format_eta(seconds_per_pass: float, n_chunk: int) -> str:
    total_seconds = int(seconds_per_pass * n_chunk)
    parts: list[str] = []
    if total_seconds >= 60 * 60:
        parts.append(f"{total_seconds // (60 * 60)} hours")
        total_seconds %= 60 * 60
    parts.append(f"{total_seconds / 60.0:.2f} minutes")
    return " ".join(parts)


class RunDriver:
    """Orchestrate chunked evaluation, snapshots and end-of-run reports.

    The driver owns the accumulator for the lifetime of one run; model
    inference is delegated to a :class:`LogitsProvider` whose execution
    engine reports activations through :meth:`make_callback`.
    """

    def __init__(
        self,
        config: ImatrixConfig,
        provider: LogitsProvider,
        accumulator: StatsAccumulator | None = None,
        *,
        console: Console | None = None,
        reporter: Reporter | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._accumulator = accumulator or StatsAccumulator()
        self._console = console or Console()
        self._reporter = reporter
        self._reducer = LogLikelihoodReducer(config.workers)
        logging.getLogger("actlens").setLevel(verbosity_level(config.verbosity))
        self.logit_history: NDArray[np.float32] = np.zeros(0, dtype=np.float32)
        self.prob_history: NDArray[np.float32] = np.zeros(0, dtype=np.float32)

    @property
    def accumulator(self) -> StatsAccumulator:
        return self._accumulator

    def make_callback(self, selector: TensorSelector | None = None) -> ImatrixCallback:
        config = self._config
        return ImatrixCallback(
            self._accumulator,
            selector
            or DefaultTensorSelector(
                process_output=config.process_output,
                output_tensor_name=config.output_tensor_name,
                min_rows=config.min_rows,
            ),
            CheckpointPolicy(config.output_frequency, config.save_frequency),
            self.save,
        )

    def save(
        self, request: SnapshotRequest = SnapshotRequest.PERIODIC, call_count: int = 0
    ) -> None:
        config = self._config
        if SnapshotRequest.PERIODIC in request:
            write_snapshot(
                snapshot_path(config.out_file),
                self._accumulator,
                source_description=config.prompt_file,
                min_fraction_threshold=config.min_fraction_threshold,
            )
        if SnapshotRequest.NUMBERED in request:
            write_snapshot(
                snapshot_path(config.out_file, call_count),
                self._accumulator,
                source_description=config.prompt_file,
                min_fraction_threshold=config.min_fraction_threshold,
            )

    def load_inputs(self) -> bool:
        """Merge every configured input snapshot; False if one cannot be opened."""
        for in_file in self._config.in_files:
            logger.info("Loading imatrix from %s.", in_file)
            if not load_snapshot(in_file, self._accumulator):
                logger.error("Failed to load %s.", in_file)
                return False
        if len(self._config.in_files) > 1:
            logger.info("Saving combined imatrix to %s.", self._config.out_file)
            self.save()
        return True

    def run(self, tokens: Sequence[int]) -> PerplexityEstimate | None:
        config = self._config
        n_ctx = self._provider.n_ctx
        tokens = list(tokens)

        if config.skip_chunks > 0:
            if (config.skip_chunks + 2) * n_ctx >= len(tokens):
                raise InsufficientTokensError(
                    f"There will be not enough tokens left after removing "
                    f"{config.skip_chunks} chunks",
                    len(tokens),
                    (config.skip_chunks + 2) * n_ctx + 1,
                )
            logger.info(
                "Removing initial %d chunks (%d tokens).",
                config.skip_chunks,
                config.skip_chunks * n_ctx,
            )
            del tokens[: config.skip_chunks * n_ctx]

        if len(tokens) < 2 * n_ctx:
            raise InsufficientTokensError(
                f"You need at least {2 * n_ctx} tokens for a context of {n_ctx} "
                f"tokens; the input tokenizes to only {len(tokens)} tokens",
                len(tokens),
                2 * n_ctx,
            )

        n_chunk_max = len(tokens) // n_ctx
        n_chunk = n_chunk_max if config.n_chunks < 0 else min(config.n_chunks, n_chunk_max)
        n_batch = min(config.n_batch, n_ctx)
        num_batches = (n_ctx + n_batch - 1) // n_batch
        logger.info(
            "Computing over %d chunks with batch_size %d.", n_chunk, n_batch
        )

        tracker = PerplexityTracker()
        if config.compute_ppl:
            self.logit_history = np.zeros(len(tokens), dtype=np.float32)
            self.prob_history = np.zeros(len(tokens), dtype=np.float32)

        for i in range(n_chunk):
            start = i * n_ctx
            end = start + n_ctx
            chunk_logits: list[NDArray[np.float32]] = []

            t_start = time.perf_counter()
            self._provider.reset()
            for j in range(num_batches):
                batch_start = start + j * n_batch
                batch_size = min(end - batch_start, n_batch)
                batch = tokens[batch_start : batch_start + batch_size]
                bos = self._provider.bos_token
                if j == 0 and bos is not None:
                    batch[0] = bos
                logits = self._provider.evaluate(batch, j * n_batch)
                if config.compute_ppl:
                    chunk_logits.append(np.asarray(logits, dtype=np.float32))

            if i == 0:
                seconds = time.perf_counter() - t_start
                logger.info(
                    "%.2f seconds per pass - ETA %s.",
                    seconds,
                    _format_eta(seconds, n_chunk),
                )

            if config.compute_ppl:
                self._score_chunk(np.concatenate(chunk_logits), tokens, start, tracker)
                self._console.print(
                    f"[{i + 1}]{tracker.current():.4f},",
                    end="",
                    markup=False,
                    highlight=False,
                    soft_wrap=True,
                )
        self._console.print()

        if not config.compute_ppl:
            return None
        estimate = tracker.finalize()
        if estimate.stderr is not None:
            self._console.print(
                f"Final estimate: PPL = {estimate.ppl:.4f} +/- {estimate.stderr:.5f}",
                markup=False,
                highlight=False,
            )
        else:
            self._console.print(
                "Unexpected negative standard deviation of log(prob)",
                markup=False,
                highlight=False,
            )
        return estimate

    def _score_chunk(
        self,
        logits: NDArray[np.float32],
        tokens: list[int],
        start: int,
        tracker: PerplexityTracker,
    ) -> None:
        # Only the second half of each chunk has enough context to be scored.
        n_ctx = self._provider.n_ctx
        first = n_ctx // 2
        rows = n_ctx - 1 - first
        offset = start + first
        sums = self._reducer.reduce(
            logits[first : first + rows],
            np.asarray(tokens[offset + 1 : offset + 1 + rows], dtype=np.int64),
            self.logit_history[offset : offset + rows],
            self.prob_history[offset : offset + rows],
        )
        tracker.add(sums, rows)

    def finish(self) -> LayerImportanceReport | None:
        """Write the final snapshot and, if configured, score layer importance."""
        self.save()
        if not self._config.compute_lim:
            return None
        if len(self._accumulator) == 0:
            logger.error("No data collected - cannot compute LIM scores.")
            return None
        report = LayerImportanceScorer().score(self._accumulator)
        if self._reporter is not None:
            self._reporter.render_importance(report)
        return report
