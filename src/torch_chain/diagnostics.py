"""Verbosity-gated diagnostics for chain objective computation.

Diagnostics are a pure side channel: they read derivative buffers and
posteriors and write log records, never touching returned values.

The default verbosity is read from the ``TORCH_CHAIN_VERBOSE`` environment
variable when the default diagnostics object is first created.

Example usage:
    >>> import random
    >>> from torch_chain.diagnostics import ChainDiagnostics
    >>>
    >>> # Log derivative magnitudes on every call, deterministically
    >>> diag = ChainDiagnostics(verbose=1, sample_prob=1.0)
    >>>
    >>> # Reproducible 1-in-11 sampling
    >>> diag = ChainDiagnostics(verbose=1, rng=random.Random(0))
"""

import logging
import os
import random
from typing import Optional

from torch import Tensor

__all__ = [
    "ChainDiagnostics",
    "get_default_diagnostics",
    "set_default_diagnostics",
    "derivs_per_frame",
]

logger = logging.getLogger(__name__)

VERBOSE_ENV_VAR = "TORCH_CHAIN_VERBOSE"
DEFAULT_SAMPLE_PROB = 1.0 / 11.0


def derivs_per_frame(nnet_output_deriv: Tensor, num_sequences: int) -> Tensor:
    r"""Sum of squared derivatives per frame position.

    Returns:
        Tensor: shape :math:`(\text{frames\_per\_sequence},)`; entry ``t`` is
        the squared norm of the derivative rows of frame ``t``, summed over
        the parallel sequences.
    """
    row_products = (nnet_output_deriv.detach() ** 2).sum(dim=-1)
    return row_products.view(-1, num_sequences).sum(dim=-1)


class ChainDiagnostics:
    """Verbosity level, sampling policy and logger for chain diagnostics.

    Args:
        verbose (int, optional): verbosity level; ``0`` disables diagnostics.
            Default: ``0``
        sample_prob (float, optional): probability that a sampled diagnostic
            fires on a given call. Default: ``1/11``
        rng (random.Random, optional): random source for sampling.
            Default: a fresh ``random.Random()``
        log (logging.Logger, optional): destination logger.
            Default: the ``torch_chain.diagnostics`` logger
    """

    def __init__(
        self,
        verbose: int = 0,
        sample_prob: float = DEFAULT_SAMPLE_PROB,
        rng: Optional[random.Random] = None,
        log: Optional[logging.Logger] = None,
    ):
        if not 0.0 <= sample_prob <= 1.0:
            raise ValueError(f"sample_prob must be in [0, 1], got {sample_prob}")
        self.verbose = verbose
        self.sample_prob = sample_prob
        self.rng = rng if rng is not None else random.Random()
        self.log = log if log is not None else logger

    @classmethod
    def from_env(cls) -> "ChainDiagnostics":
        value = os.environ.get(VERBOSE_ENV_VAR, "0")
        try:
            verbose = int(value)
        except ValueError as err:
            raise ValueError(f"{VERBOSE_ENV_VAR} must be an integer, got {value!r}") from err
        return cls(verbose=verbose)

    def enabled(self, level: int) -> bool:
        return self.verbose >= level

    def _sampled(self) -> bool:
        return self.rng.random() < self.sample_prob

    def vlog(self, level: int, msg: str, *args) -> None:
        """Log ``msg`` at INFO if verbosity is at least ``level``."""
        if self.enabled(level):
            self.log.info(msg, *args)

    def log_derivs_per_frame(
        self,
        nnet_output_deriv: Optional[Tensor],
        num_sequences: int,
        sample: bool = True,
    ) -> Optional[Tensor]:
        """Log per-frame derivative magnitudes.

        Fires at verbosity 1 or above when a buffer is given and, if
        ``sample`` is set, the sampler accepts this call.

        Returns:
            Tensor or None: the logged vector, or ``None`` if nothing was logged.
        """
        if nnet_output_deriv is None or not self.enabled(1):
            return None
        if sample and not self._sampled():
            return None
        per_frame = derivs_per_frame(nnet_output_deriv, num_sequences)
        self.log.info("Derivs per frame are %s", per_frame.tolist())
        return per_frame

    def log_sparse_posterior(self, rows: list) -> None:
        """Log posteriors given as per-row ``(pdf, value)`` pairs at verbosity 2."""
        if self.enabled(2):
            for i, row in enumerate(rows):
                self.log.info("numerator posterior frame %d: %s", i, row)


_default_diagnostics: Optional[ChainDiagnostics] = None


def get_default_diagnostics() -> ChainDiagnostics:
    global _default_diagnostics
    if _default_diagnostics is None:
        _default_diagnostics = ChainDiagnostics.from_env()
    return _default_diagnostics


def set_default_diagnostics(diagnostics: Optional[ChainDiagnostics]) -> None:
    """Replace the default diagnostics; ``None`` re-reads the environment on next use."""
    global _default_diagnostics
    _default_diagnostics = diagnostics
