r"""Autograd function wrapping the chain objective."""

from typing import Optional

import torch

from .graph import DenominatorGraph
from .options import ChainTrainingOptions
from .supervision import Supervision
from .training import compute_chain_objf_and_deriv

__all__ = ["ChainObjfFunction", "chain_objf"]


class ChainObjfFunction(torch.autograd.Function):
    r"""Chain objective as an autograd function.

    Returns a tensor ``[objf, l2_term, weight]``. The derivative computed by
    :func:`~torch_chain.training.compute_chain_objf_and_deriv` is that of
    ``objf + l2_term``; it is attached to ``objf`` (index 0), so losses
    should combine the two with the same scale, as
    :class:`~torch_chain.nn.ChainLoss` does.

    ``xent_output`` is the output of a separate cross-entropy head with the
    same shape as ``nnet_output``. Its value is not used; it receives the
    numerator part of the derivative scaled by ``opts.xent_regularize``.
    """

    @staticmethod
    def forward(
        ctx,
        opts: ChainTrainingOptions,
        den_graph: DenominatorGraph,
        supervision: Supervision,
        nnet_output: torch.Tensor,
        xent_output: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        nnet_output = nnet_output.detach()
        nnet_output_deriv = torch.zeros_like(nnet_output)
        xent_output_deriv = None
        if xent_output is not None and opts.xent_regularize > 0:
            xent_output_deriv = torch.empty(0, dtype=nnet_output.dtype, device=nnet_output.device)

        result = compute_chain_objf_and_deriv(
            opts,
            den_graph,
            supervision,
            nnet_output,
            nnet_output_deriv=nnet_output_deriv,
            xent_output_deriv=xent_output_deriv,
        )

        ctx.save_for_backward(nnet_output_deriv)
        ctx.xent_output_deriv = xent_output_deriv
        ctx.xent_regularize = opts.xent_regularize
        ctx.has_xent_output = xent_output is not None
        return result.as_tensor(device=nnet_output.device, dtype=nnet_output.dtype)

    @staticmethod
    def backward(ctx, grad_output: torch.Tensor):
        (nnet_output_deriv,) = ctx.saved_tensors
        scale = grad_output[0]
        grad_nnet_output = nnet_output_deriv * scale

        grad_xent_output = None
        if ctx.has_xent_output:
            if ctx.xent_output_deriv is not None:
                grad_xent_output = ctx.xent_output_deriv * (ctx.xent_regularize * scale)
            else:
                grad_xent_output = torch.zeros_like(nnet_output_deriv)

        # opts, den_graph and supervision are not differentiable.
        return None, None, None, grad_nnet_output, grad_xent_output


def chain_objf(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: torch.Tensor,
    xent_output: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Functional form of :class:`ChainObjfFunction`."""
    return ChainObjfFunction.apply(opts, den_graph, supervision, nnet_output, xent_output)
