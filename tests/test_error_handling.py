"""
Tests for the non-finite objective fallback.

Numerical failures never raise: the objective is replaced by a fixed
per-frame penalty, every requested derivative buffer is zeroed and a warning
is logged. Precondition violations, in contrast, raise ValueError.
"""

import logging

import pytest
import torch

from torch_chain import (
    ChainGraph,
    ChainTrainingOptions,
    Supervision,
    compute_chain_objf_and_deriv,
    compute_chain_objf_and_deriv_e2e,
    compute_kl_objf_and_deriv,
)
from torch_chain.training import DEFAULT_OBJF_PER_FRAME


@pytest.fixture
def nan_output():
    nnet_output = torch.randn(2 * 3, 4, dtype=torch.float64)
    nnet_output[4, 2] = float("nan")
    return nnet_output


class TestNanFallback:
    """A NaN in the network output triggers the fallback in every orchestrator."""

    def test_standard(self, small_den_graph, make_supervision, nan_output):
        sup = make_supervision([[0, 1, 2], [3, 0, 1]], weight=0.5)
        deriv = torch.ones_like(nan_output)
        xent = torch.empty(0, dtype=torch.float64)

        result = compute_chain_objf_and_deriv(
            ChainTrainingOptions(),
            small_den_graph,
            sup,
            nan_output,
            nnet_output_deriv=deriv,
            xent_output_deriv=xent,
        )

        assert result.objf == pytest.approx(DEFAULT_OBJF_PER_FRAME * 0.5 * 6)
        assert (deriv == 0).all()
        assert (xent == 0).all()

    def test_e2e(self, small_den_graph, make_supervision, nan_output):
        sup = make_supervision([[0, 1, 2], [3, 0, 1]], weight=2.0, e2e=True)
        deriv = torch.ones_like(nan_output)

        result = compute_chain_objf_and_deriv_e2e(
            ChainTrainingOptions(), small_den_graph, sup, nan_output, nnet_output_deriv=deriv
        )

        assert result.objf == pytest.approx(-10.0 * 2.0 * 6)
        assert (deriv == 0).all()

    def test_kl(self, small_den_graph, nan_output):
        targets = torch.full((6, 4), 0.25, dtype=torch.float64)
        sup = Supervision(1.0, 2, 3, numerator_post_targets=targets)
        deriv = torch.ones_like(nan_output)

        result = compute_kl_objf_and_deriv(
            ChainTrainingOptions(), small_den_graph, sup, nan_output, nnet_output_deriv=deriv
        )

        assert result.objf == pytest.approx(-10.0 * 6)
        assert (deriv == 0).all()

    def test_warning_logged(self, small_den_graph, make_supervision, nan_output, caplog):
        sup = make_supervision([[0, 1, 2], [3, 0, 1]])
        with caplog.at_level(logging.WARNING, logger="torch_chain"):
            compute_chain_objf_and_deriv(
                ChainTrainingOptions(),
                small_den_graph,
                sup,
                nan_output,
                nnet_output_deriv=torch.zeros_like(nan_output),
            )
        assert "setting objective function to -10.0 per frame" in caplog.text
        assert "returned False" in caplog.text


class TestL2AfterFallback:
    """The standard orchestrator adds the L2 term after a fallback; end-to-end does not."""

    def test_standard_applies_l2(self, make_one_state_den_graph):
        # The reference path needs four frames; the chunk has three.
        sup = Supervision(1.0, 1, 3, fsts=[ChainGraph.from_alignment([0, 1, 0, 1])])
        nnet_output = torch.randn(3, 2, dtype=torch.float64)
        deriv = torch.zeros_like(nnet_output)

        result = compute_chain_objf_and_deriv(
            ChainTrainingOptions(l2_regularize=0.1),
            make_one_state_den_graph(2),
            sup,
            nnet_output,
            nnet_output_deriv=deriv,
        )

        assert result.objf == pytest.approx(-10.0 * 3)
        assert result.l2_term == pytest.approx(-0.5 * 0.1 * (nnet_output**2).sum().item())
        torch.testing.assert_close(deriv, -0.1 * nnet_output)

    def test_e2e_skips_l2(self, make_one_state_den_graph):
        sup = Supervision(1.0, 1, 3, fsts=[ChainGraph.from_alignment([0, 1, 0, 1])], e2e=True)
        nnet_output = torch.randn(3, 2, dtype=torch.float64)
        deriv = torch.zeros_like(nnet_output)

        result = compute_chain_objf_and_deriv(
            ChainTrainingOptions(l2_regularize=0.1),
            make_one_state_den_graph(2),
            sup,
            nnet_output,
            nnet_output_deriv=deriv,
        )

        assert result.objf == pytest.approx(-10.0 * 3)
        assert result.l2_term == 0.0
        assert (deriv == 0).all()


class TestPreconditions:
    """Caller errors raise instead of falling back."""

    def test_row_mismatch(self, small_den_graph, make_supervision):
        sup = make_supervision([[0, 1, 2], [3, 0, 1]])
        with pytest.raises(ValueError, match="rows"):
            compute_chain_objf_and_deriv(
                ChainTrainingOptions(), small_den_graph, sup, torch.zeros(5, 4)
            )

    def test_non_finite_input_does_not_raise(self, small_den_graph, make_supervision):
        sup = make_supervision([[0, 1, 2], [3, 0, 1]])
        inf_output = torch.zeros(6, 4, dtype=torch.float64)
        inf_output[0, 0] = float("inf")
        result = compute_chain_objf_and_deriv(
            ChainTrainingOptions(), small_den_graph, sup, inf_output
        )
        assert result.objf == pytest.approx(-10.0 * 6)
