"""Tests for DenominatorComputation and DenominatorSmbrComputation."""

import math

import pytest
import torch

from torch_chain import (
    ChainTrainingOptions,
    DenominatorComputation,
    DenominatorSmbrComputation,
)


def one_state_log_prob(nnet_output, leaky=0.0):
    """Total log-probability under the one-state graph."""
    P = nnet_output.shape[1]
    per_row = torch.logsumexp(nnet_output, dim=-1) - math.log(P) + math.log(1 + leaky)
    return per_row.sum().item()


class TestDenominatorComputation:
    """Tests for the MMI denominator."""

    @pytest.fixture
    def opts(self):
        return ChainTrainingOptions(leaky_hmm_coefficient=0.0)

    def test_forward_closed_form(self, opts, make_one_state_den_graph):
        torch.manual_seed(0)
        nnet_output = torch.randn(3 * 4, 5, dtype=torch.float64)
        with DenominatorComputation(opts, make_one_state_den_graph(5), 3, nnet_output) as den:
            assert den.forward() == pytest.approx(one_state_log_prob(nnet_output))

    def test_forward_leaky_closed_form(self, make_one_state_den_graph):
        opts = ChainTrainingOptions(leaky_hmm_coefficient=0.01)
        nnet_output = torch.randn(2 * 3, 4, dtype=torch.float64)
        with DenominatorComputation(opts, make_one_state_den_graph(4), 2, nnet_output) as den:
            assert den.forward() == pytest.approx(one_state_log_prob(nnet_output, leaky=0.01))

    def test_backward_adds_weighted_softmax(self, opts, make_one_state_den_graph):
        nnet_output = torch.randn(2 * 3, 4, dtype=torch.float64)
        deriv = torch.ones_like(nnet_output)
        with DenominatorComputation(opts, make_one_state_den_graph(4), 2, nnet_output) as den:
            den.forward()
            ok = den.backward(-0.5, deriv)

        assert ok
        torch.testing.assert_close(deriv, 1.0 - 0.5 * torch.softmax(nnet_output, dim=-1))

    def test_posteriors_sum_to_one(self, small_den_graph):
        opts = ChainTrainingOptions()
        torch.manual_seed(1)
        nnet_output = torch.randn(2 * 6, 4, dtype=torch.float64)
        deriv = torch.zeros_like(nnet_output)
        with DenominatorComputation(opts, small_den_graph, 2, nnet_output) as den:
            den.forward()
            assert den.backward(1.0, deriv)
        torch.testing.assert_close(deriv.sum(dim=-1), torch.ones(12, dtype=torch.float64))

    def test_nan_input_reports_failure(self, opts, small_den_graph):
        nnet_output = torch.zeros(2 * 3, 4, dtype=torch.float64)
        nnet_output[3, 1] = float("nan")
        with DenominatorComputation(opts, small_den_graph, 2, nnet_output) as den:
            assert math.isnan(den.forward())
            assert not den.backward(1.0, torch.zeros_like(nnet_output))

    def test_released_on_exit(self, opts, small_den_graph):
        nnet_output = torch.zeros(2 * 3, 4, dtype=torch.float64)
        with DenominatorComputation(opts, small_den_graph, 2, nnet_output) as den:
            den.forward()
        with pytest.raises(RuntimeError, match="after release"):
            den.forward()

    def test_backward_before_forward_raises(self, opts, small_den_graph):
        nnet_output = torch.zeros(2 * 3, 4, dtype=torch.float64)
        den = DenominatorComputation(opts, small_den_graph, 2, nnet_output)
        with pytest.raises(RuntimeError, match="forward"):
            den.backward(1.0, torch.zeros_like(nnet_output))

    def test_rows_not_multiple_raises(self, opts, small_den_graph):
        with pytest.raises(ValueError, match="multiple of num_sequences"):
            DenominatorComputation(opts, small_den_graph, 4, torch.zeros(6, 4))

    def test_column_mismatch_raises(self, opts, small_den_graph):
        with pytest.raises(ValueError, match="4 pdfs"):
            DenominatorComputation(opts, small_den_graph, 2, torch.zeros(6, 5))


class TestDenominatorSmbrComputation:
    """Tests for the SMBR denominator."""

    def test_forward_smbr_one_state(self, make_one_state_den_graph):
        opts = ChainTrainingOptions(leaky_hmm_coefficient=0.0, mmi_factor=0.5)
        torch.manual_seed(2)
        nnet_output = torch.randn(2 * 3, 4, dtype=torch.float64)
        accuracy = torch.rand(6, 4, dtype=torch.float64)

        with DenominatorSmbrComputation(
            opts, make_one_state_den_graph(4), 2, nnet_output, accuracy
        ) as den:
            smbr, den_logprob_negated = den.forward_smbr()

        expected_smbr = (torch.softmax(nnet_output, dim=-1) * accuracy).sum().item()
        assert smbr == pytest.approx(expected_smbr)
        assert den_logprob_negated == pytest.approx(-0.5 * one_state_log_prob(nnet_output))

    def test_backward_smbr_one_state(self, make_one_state_den_graph):
        opts = ChainTrainingOptions(leaky_hmm_coefficient=0.0)
        torch.manual_seed(3)
        nnet_output = torch.randn(2 * 3, 4, dtype=torch.float64)
        accuracy = torch.rand(6, 4, dtype=torch.float64)
        deriv = torch.zeros_like(nnet_output)

        with DenominatorSmbrComputation(
            opts, make_one_state_den_graph(4), 2, nnet_output, accuracy
        ) as den:
            den.forward_smbr()
            ok = den.backward_smbr(2.0, deriv)

        # d/dx sum_p softmax_p a_p = softmax * (a - expected accuracy)
        post = torch.softmax(nnet_output, dim=-1)
        expected_acc = (post * accuracy).sum(dim=-1, keepdim=True)
        expected = 2.0 * (post * (accuracy - expected_acc) - post)
        assert ok
        torch.testing.assert_close(deriv, expected)

    def test_release_clears_smbr_state(self, small_den_graph):
        opts = ChainTrainingOptions()
        nnet_output = torch.zeros(2 * 3, 4, dtype=torch.float64)
        den = DenominatorSmbrComputation(
            opts, small_den_graph, 2, nnet_output, torch.zeros_like(nnet_output)
        )
        den.forward_smbr()
        den.release()
        with pytest.raises(RuntimeError, match="after release"):
            den.backward_smbr(1.0, torch.zeros_like(nnet_output))

    def test_numerator_post_shape_mismatch_raises(self, small_den_graph):
        with pytest.raises(ValueError, match="numerator_post"):
            DenominatorSmbrComputation(
                ChainTrainingOptions(),
                small_den_graph,
                2,
                torch.zeros(6, 4),
                torch.zeros(6, 3),
            )
