"""Output-score penalties shared by all chain objective functions."""

from typing import Optional

from torch import Tensor

from .options import ChainTrainingOptions
from .supervision import Supervision

__all__ = ["add_l2_regularization"]


def add_l2_regularization(
    opts: ChainTrainingOptions,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
) -> float:
    r"""add_l2_regularization(opts, supervision, nnet_output, nnet_output_deriv=None) -> float

    Compute the output penalty and add its derivative to ``nnet_output_deriv``.

    With :math:`s = w \cdot \text{l2\_regularize}` (:math:`w` the supervision
    weight), the penalty is

    - :math:`-\frac{s}{2} \sum x^2` with derivative :math:`-s x`, or
    - :math:`-s \sum \exp(x)` with derivative :math:`-s \exp(x)` when
      ``opts.norm_regularize`` is set.

    Returns:
        float: the penalty term, ``0.0`` when ``l2_regularize`` is zero.
    """
    if opts.l2_regularize == 0.0:
        return 0.0

    scale = supervision.weight * opts.l2_regularize
    x = nnet_output.detach()
    if not opts.norm_regularize:
        l2_term = -0.5 * scale * (x * x).sum().item()
        penalty_deriv = x
    else:
        exp_x = x.exp()
        l2_term = -scale * exp_x.sum().item()
        penalty_deriv = exp_x

    if nnet_output_deriv is not None:
        nnet_output_deriv.add_(penalty_deriv.to(nnet_output_deriv.dtype), alpha=-scale)
    return l2_term
