r"""Denominator forward-backward over the shared denominator graph.

:class:`DenominatorComputation` computes the total log-probability of all
state sequences admitted by the denominator graph, summed over the parallel
sequences of a minibatch, and the corresponding pdf posteriors.
:class:`DenominatorSmbrComputation` additionally computes the expected frame
accuracy under those posteriors, with per-frame accuracies supplied by the
(shaped) numerator posterior.

Both evaluators hold the autograd graph of their forward pass as working
memory. They are context managers: leaving the ``with`` block drops that
memory, which callers rely on to bound peak memory before allocating further
buffers.

Examples::

    >>> with DenominatorComputation(opts, den_graph, num_sequences, nnet_output) as den:
    ...     den_logprob = den.forward()
    ...     ok = den.backward(-1.0, nnet_output_deriv)
    >>> # den's working memory has been released here
"""

from typing import Optional

import torch
from torch import Tensor

from .graph import DenominatorGraph, chain_forward
from .options import ChainTrainingOptions
from .validation import validate_deriv_buffer, validate_device_consistency

__all__ = ["DenominatorComputation", "DenominatorSmbrComputation"]

# Allowed deviation of per-frame posterior sums from one in backward().
_POSTERIOR_SUM_TOLERANCE = 1.0e-02


class DenominatorComputation:
    r"""Denominator log-probability and posteriors.

    Args:
        opts (ChainTrainingOptions): training options (``leaky_hmm_coefficient``
            is used here).
        den_graph (DenominatorGraph): the denominator graph.
        num_sequences (int): number of parallel sequences in ``nnet_output``.
        nnet_output (Tensor): output scores of shape
            :math:`(T \cdot \text{num\_sequences}, P)`, frame-major.
    """

    def __init__(
        self,
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        num_sequences: int,
        nnet_output: Tensor,
    ):
        if nnet_output.ndim != 2 or nnet_output.shape[0] % num_sequences != 0:
            raise ValueError(
                f"nnet_output rows ({nnet_output.shape[0]}) must be a multiple of "
                f"num_sequences ({num_sequences})"
            )
        if nnet_output.shape[1] != den_graph.num_pdfs:
            raise ValueError(
                f"nnet_output has {nnet_output.shape[1]} columns but the denominator "
                f"graph has {den_graph.num_pdfs} pdfs"
            )
        self.opts = opts
        self.den_graph = den_graph
        self.num_sequences = num_sequences
        self.nnet_output = nnet_output
        self.frames_per_sequence = nnet_output.shape[0] // num_sequences
        self._input: Optional[Tensor] = None
        self._log_prob: Optional[Tensor] = None
        self._released = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False

    def release(self) -> None:
        """Drop the working memory held by the forward pass."""
        self._input = None
        self._log_prob = None
        self._released = True

    def _check_alive(self) -> None:
        if self._released:
            raise RuntimeError(f"{type(self).__name__} used after release()")

    def _run_forward(self) -> Tensor:
        self._check_alive()
        T, B = self.frames_per_sequence, self.num_sequences
        x = self.nnet_output.detach().requires_grad_(True)
        with torch.enable_grad():
            log_probs = chain_forward(
                self.den_graph.fst,
                x.reshape(T, B, -1),
                initial_probs=self.den_graph.initial_probs,
                leaky_hmm_coefficient=self.opts.leaky_hmm_coefficient,
            )
            self._log_prob = log_probs.sum()
        self._input = x
        return self._log_prob

    def _posteriors(self, create_graph: bool = False) -> Tensor:
        self._check_alive()
        if self._log_prob is None:
            raise RuntimeError("forward() must be called before backward()")
        with torch.enable_grad():
            (post,) = torch.autograd.grad(
                self._log_prob, self._input, create_graph=create_graph, retain_graph=create_graph
            )
        return post

    def forward(self) -> float:
        """Total denominator log-probability over all sequences."""
        return self._run_forward().item()

    def backward(self, deriv_weight: float, nnet_output_deriv: Tensor) -> bool:
        """Add ``deriv_weight`` times the denominator posteriors.

        Returns:
            bool: ``False`` if the posteriors are not finite or some frame's
            posteriors do not sum to one.
        """
        validate_deriv_buffer(nnet_output_deriv, self.nnet_output)
        validate_device_consistency(
            self.nnet_output, nnet_output_deriv, names=["nnet_output", "nnet_output_deriv"]
        )
        post = self._posteriors()
        self._log_prob = None
        nnet_output_deriv.add_(post.to(nnet_output_deriv.dtype), alpha=deriv_weight)
        return self._posteriors_ok(post)

    @staticmethod
    def _posteriors_ok(post: Tensor) -> bool:
        if not torch.isfinite(post).all():
            return False
        row_sums = post.sum(dim=-1)
        return bool(((row_sums - 1.0).abs() <= _POSTERIOR_SUM_TOLERANCE).all())


class DenominatorSmbrComputation(DenominatorComputation):
    r"""Denominator pass for SMBR training.

    The SMBR objective is the expected frame accuracy under the denominator
    posteriors,

    .. math::
        \text{smbr} = \sum_{t,p} \gamma^{\text{den}}_{t,p}\, a_{t,p},

    where the accuracies :math:`a` are the rows of ``numerator_post``.

    Args:
        opts (ChainTrainingOptions): training options (``mmi_factor`` scales
            the returned denominator log-probability).
        den_graph (DenominatorGraph): the denominator graph.
        num_sequences (int): number of parallel sequences.
        nnet_output (Tensor): output scores, frame-major.
        numerator_post (Tensor): per-frame accuracies, same shape as
            ``nnet_output``. Treated as a constant.
    """

    def __init__(
        self,
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        num_sequences: int,
        nnet_output: Tensor,
        numerator_post: Tensor,
    ):
        super().__init__(opts, den_graph, num_sequences, nnet_output)
        if numerator_post.shape != nnet_output.shape:
            raise ValueError(
                f"numerator_post shape {tuple(numerator_post.shape)} doesn't match "
                f"nnet_output shape {tuple(nnet_output.shape)}"
            )
        self.numerator_post = numerator_post.detach()
        self._smbr: Optional[Tensor] = None
        self._den_post: Optional[Tensor] = None

    def release(self) -> None:
        self._smbr = None
        self._den_post = None
        super().release()

    def forward_smbr(self) -> tuple[float, float]:
        """Run the forward pass.

        Returns:
            tuple[float, float]: ``(smbr_objf, den_logprob_negated)``, where
            ``den_logprob_negated`` is ``-mmi_factor`` times the total
            denominator log-probability.
        """
        log_prob = self._run_forward()
        self._den_post = self._posteriors(create_graph=True)
        with torch.enable_grad():
            accuracy = self.numerator_post.to(self._den_post.dtype)
            self._smbr = (self._den_post * accuracy).sum()
        den_logprob_negated = -self.opts.mmi_factor * log_prob.item()
        return self._smbr.item(), den_logprob_negated

    def backward_smbr(self, deriv_weight: float, nnet_output_deriv: Tensor) -> bool:
        """Add ``deriv_weight`` times the derivative of ``smbr + den_logprob_negated``.

        Returns:
            bool: whether the added derivative is finite.
        """
        self._check_alive()
        if self._smbr is None:
            raise RuntimeError("forward_smbr() must be called before backward_smbr()")
        validate_deriv_buffer(nnet_output_deriv, self.nnet_output)
        (smbr_grad,) = torch.autograd.grad(self._smbr, self._input)
        deriv = smbr_grad - self.opts.mmi_factor * self._den_post.detach()
        self._smbr = None
        self._den_post = None
        self._log_prob = None
        nnet_output_deriv.add_(deriv.to(nnet_output_deriv.dtype), alpha=deriv_weight)
        return bool(torch.isfinite(deriv).all())
