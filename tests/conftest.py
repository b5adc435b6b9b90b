"""
Pytest configuration for torch-chain tests.

IMPORTANT: CPU-ONLY TESTING
---------------------------
This test suite runs on CPU only, in float64 so that objective values and
derivatives can be compared against closed forms and finite differences
with tight tolerances.

Two denominator graphs are used throughout:

- the one-state graph, a single state with a self-loop of probability
  ``1/P`` for every pdf. Its log-probability per sequence is
  ``sum_t [logsumexp(x_t) - log P + log(1 + leaky)]`` and its posteriors
  are the row-wise softmax of the network output.
- a small three-state graph with no closed form, for gradient checks.
"""

import pytest
import torch

from torch_chain import ChainGraph, DenominatorGraph, Supervision
from torch_chain.diagnostics import ChainDiagnostics, set_default_diagnostics


@pytest.fixture(autouse=True)
def ensure_cpu_default():
    """Verify tensors are created on CPU by default."""
    assert torch.tensor([1.0]).device.type == "cpu", "Default device should be CPU"
    yield


@pytest.fixture(autouse=True)
def quiet_diagnostics():
    """Keep diagnostics off regardless of TORCH_CHAIN_VERBOSE."""
    set_default_diagnostics(ChainDiagnostics(verbose=0))
    yield
    set_default_diagnostics(None)


@pytest.fixture
def make_one_state_den_graph():
    """Factory for the one-state denominator graph with ``num_pdfs`` pdfs."""

    def _create(num_pdfs):
        arcs = [(0, 0, p, 1.0 / num_pdfs) for p in range(num_pdfs)]
        return DenominatorGraph(ChainGraph.from_arcs(1, arcs), num_pdfs)

    return _create


@pytest.fixture
def small_den_graph():
    """Three-state stochastic denominator graph over four pdfs."""
    arcs = [
        (0, 0, 0, 0.5),
        (0, 1, 1, 0.5),
        (1, 1, 2, 0.4),
        (1, 2, 3, 0.6),
        (2, 0, 0, 0.7),
        (2, 2, 1, 0.3),
    ]
    return DenominatorGraph(ChainGraph.from_arcs(3, arcs), num_pdfs=4)


@pytest.fixture
def make_supervision():
    """Factory for supervisions built from per-sequence pdf alignments.

    Returns a function ``(alignments, weight=1.0, **kwargs) -> Supervision``
    with one linear-chain numerator per alignment. All alignments must have
    the same length.
    """

    def _create(alignments, weight=1.0, **kwargs):
        fsts = [ChainGraph.from_alignment(a) for a in alignments]
        return Supervision(
            weight=weight,
            num_sequences=len(alignments),
            frames_per_sequence=len(alignments[0]),
            fsts=fsts,
            **kwargs,
        )

    return _create


@pytest.fixture
def alignment_one_hot():
    """Factory for frame-major one-hot matrices from alignments."""

    def _create(alignments, num_pdfs):
        num_sequences, T = len(alignments), len(alignments[0])
        out = torch.zeros(num_sequences * T, num_pdfs, dtype=torch.float64)
        for s, alignment in enumerate(alignments):
            for t, pdf in enumerate(alignment):
                out[t * num_sequences + s, pdf] = 1.0
        return out

    return _create
