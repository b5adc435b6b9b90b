r"""Numerator forward-backward over per-sequence reference acceptors.

Two evaluators share one implementation:

- :class:`NumeratorComputation` for reference paths and lattices. The
  reference is assumed to be admissible, so the backward pass reports nothing.
- :class:`GenericNumeratorComputation` for end-to-end training, where the
  numerator is an HMM acceptor that may fail to cover the chunk; its backward
  pass reports success.

Both include ``supervision.weight`` in the returned log-probability and in
the posteriors they add to a gradient buffer.
"""

from typing import Optional

import torch
from torch import Tensor

from .graph import chain_forward
from .supervision import Supervision
from .validation import validate_deriv_buffer, validate_nnet_output

__all__ = ["NumeratorComputation", "GenericNumeratorComputation"]


class _NumeratorBase:
    def __init__(self, supervision: Supervision, nnet_output: Tensor):
        validate_nnet_output(
            nnet_output, supervision.num_sequences, supervision.frames_per_sequence
        )
        if len(supervision.fsts) != supervision.num_sequences:
            raise ValueError(
                f"supervision has {len(supervision.fsts)} fsts for "
                f"{supervision.num_sequences} sequences"
            )
        self.supervision = supervision
        self.nnet_output = nnet_output
        self._inputs: list[Tensor] = []
        self._log_probs: Optional[Tensor] = None

    def forward(self) -> float:
        """Weighted total log-probability of the references."""
        sup = self.supervision
        self._inputs = []
        log_probs = []
        with torch.enable_grad():
            for seq, fst in enumerate(sup.fsts):
                scores = self.nnet_output[sup.sequence_rows(seq)].detach().requires_grad_(True)
                self._inputs.append(scores)
                log_probs.append(chain_forward(fst, scores.unsqueeze(1)))
            self._log_probs = torch.cat(log_probs).sum()
        return sup.weight * self._log_probs.item()

    def _posteriors(self) -> Tensor:
        if self._log_probs is None:
            raise RuntimeError("forward() must be called before backward()")
        sup = self.supervision
        grads = torch.autograd.grad(self._log_probs, self._inputs, allow_unused=True)
        post = torch.zeros_like(self.nnet_output)
        for seq, grad in enumerate(grads):
            if grad is not None:
                post[sup.sequence_rows(seq)] = grad
        self._log_probs = None
        self._inputs = []
        return post

    def _add_posteriors(self, nnet_output_deriv: Tensor) -> Tensor:
        validate_deriv_buffer(nnet_output_deriv, self.nnet_output)
        post = self._posteriors()
        nnet_output_deriv.add_(post.to(nnet_output_deriv.dtype), alpha=self.supervision.weight)
        return post


class NumeratorComputation(_NumeratorBase):
    r"""Numerator over reference paths or lattices.

    Args:
        supervision (Supervision): minibatch reference, one acceptor per sequence.
        nnet_output (Tensor): output scores of shape
            :math:`(\text{num\_sequences} \cdot \text{frames\_per\_sequence}, P)`.

    Examples::

        >>> sup = Supervision(1.0, 1, 3, fsts=[ChainGraph.from_alignment([0, 2, 1])])
        >>> num = NumeratorComputation(sup, torch.zeros(3, 4))
        >>> num.forward()
        0.0
        >>> deriv = torch.zeros(3, 4)
        >>> num.backward(deriv)  # one-hot rows at pdfs 0, 2, 1
    """

    def backward(self, nnet_output_deriv: Tensor) -> None:
        """Add ``supervision.weight`` times the numerator posteriors."""
        self._add_posteriors(nnet_output_deriv)


class GenericNumeratorComputation(_NumeratorBase):
    r"""End-to-end numerator over per-sequence HMM acceptors.

    Unlike :class:`NumeratorComputation`, the reference may be inadmissible
    for the chunk (for example when the acceptor needs more frames than the
    chunk has), in which case :meth:`forward` returns a non-finite value and
    :meth:`backward` returns ``False``.
    """

    def backward(self, nnet_output_deriv: Tensor) -> bool:
        """Add weighted numerator posteriors; return whether they are finite."""
        post = self._add_posteriors(nnet_output_deriv)
        return bool(torch.isfinite(post).all())
