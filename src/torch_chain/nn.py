r"""Neural network modules for chain training.

Provides a :class:`torch.nn.Module` loss around
:class:`~torch_chain.autograd.ChainObjfFunction`.
"""

from typing import Optional

import torch.nn as nn
from torch import Tensor

from .autograd import chain_objf
from .graph import DenominatorGraph
from .options import ChainTrainingOptions
from .supervision import Supervision

__all__ = ["ChainLoss"]


class ChainLoss(nn.Module):
    r"""Per-frame negative chain objective.

    Computes :math:`-(\text{objf} + \text{l2\_term}) / \text{weight}` for a
    minibatch, so minimizing it maximizes the chain objective.

    Args:
        den_graph (DenominatorGraph): denominator graph shared by all minibatches.
        opts (ChainTrainingOptions, optional): training options.
            Default: ``ChainTrainingOptions()``

    Examples::

        >>> loss_fn = ChainLoss(den_graph, ChainTrainingOptions(l2_regularize=5e-5))
        >>> nnet_output = model(feats)  # (num_sequences * frames_per_sequence, num_pdfs)
        >>> loss = loss_fn(nnet_output, supervision)
        >>> loss.backward()
    """

    def __init__(self, den_graph: DenominatorGraph, opts: Optional[ChainTrainingOptions] = None):
        super().__init__()
        self.den_graph = den_graph
        self.opts = opts if opts is not None else ChainTrainingOptions()

    def forward(
        self,
        nnet_output: Tensor,
        supervision: Supervision,
        xent_output: Optional[Tensor] = None,
    ) -> Tensor:
        stats = chain_objf(self.opts, self.den_graph, supervision, nnet_output, xent_output)
        objf, l2_term, weight = stats[0], stats[1], stats[2].detach()
        if weight.item() == 0:
            return -(objf + l2_term)
        return -(objf + l2_term) / weight

    def extra_repr(self) -> str:
        return f"den_graph={self.den_graph!r}, opts={self.opts}"
