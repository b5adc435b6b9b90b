r"""Frame-synchronous acceptors and the scaled forward pass over them.

A :class:`ChainGraph` is an epsilon-free weighted acceptor in which every arc
consumes exactly one frame and is labelled with the output class ("pdf") whose
score it picks up. The same representation serves for numerator paths and
lattices, end-to-end numerator HMMs and the denominator graph.

The forward pass works in probability space with per-frame renormalization,
which keeps memory at :math:`O(BA)` per frame instead of the :math:`O(BAS)`
of a dense log-semiring matmul. Gradients of the returned log-probabilities
with respect to the frame scores are the arc posteriors summed per pdf.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import torch
from torch import Tensor

from .validation import validate_frame_scores

__all__ = [
    "ChainGraph",
    "DenominatorGraph",
    "chain_forward",
]


@dataclass
class ChainGraph:
    r"""Epsilon-free frame-synchronous acceptor.

    Attributes:
        num_states (int): number of states.
        arcs (Tensor): long tensor of shape :math:`(A, 3)` holding
            ``(src, dst, pdf)`` per arc.
        arc_log_probs (Tensor): arc log-weights of shape :math:`(A,)`.
        start_state (int): start state. Default: ``0``
        final_log_probs (Tensor or None): final log-weights of shape
            :math:`(S,)`, ``-inf`` for non-final states. ``None`` means every
            state is final with weight one. Default: ``None``
    """

    num_states: int
    arcs: Tensor
    arc_log_probs: Tensor
    start_state: int = 0
    final_log_probs: Optional[Tensor] = None

    def __post_init__(self):
        if self.arcs.ndim != 2 or self.arcs.shape[1] != 3:
            raise ValueError(f"arcs must have shape (A, 3), got {tuple(self.arcs.shape)}")
        if self.arc_log_probs.shape != (self.arcs.shape[0],):
            raise ValueError(
                f"arc_log_probs must have shape ({self.arcs.shape[0]},), "
                f"got {tuple(self.arc_log_probs.shape)}"
            )
        if self.arcs.shape[0] > 0:
            states = self.arcs[:, :2]
            if states.min().item() < 0 or states.max().item() >= self.num_states:
                raise ValueError(f"arc states must be in [0, {self.num_states})")
            if self.arcs[:, 2].min().item() < 0:
                raise ValueError("arc pdf labels must be non-negative")
        if not 0 <= self.start_state < self.num_states:
            raise ValueError(
                f"start_state must be in [0, {self.num_states}), got {self.start_state}"
            )
        if self.final_log_probs is not None and self.final_log_probs.shape != (self.num_states,):
            raise ValueError(
                f"final_log_probs must have shape ({self.num_states},), "
                f"got {tuple(self.final_log_probs.shape)}"
            )

    @classmethod
    def from_arcs(
        cls,
        num_states: int,
        arcs: Sequence[tuple],
        start_state: int = 0,
        finals: Optional[dict] = None,
    ) -> "ChainGraph":
        """Build a graph from ``(src, dst, pdf, prob)`` tuples.

        ``finals`` maps state to final probability; ``None`` makes every
        state final with probability one.
        """
        arc_tensor = torch.tensor([a[:3] for a in arcs], dtype=torch.long).view(-1, 3)
        arc_log_probs = torch.tensor([float(a[3]) for a in arcs], dtype=torch.float64).log()
        final_log_probs = None
        if finals is not None:
            final_log_probs = torch.full((num_states,), float("-inf"), dtype=torch.float64)
            for state, prob in finals.items():
                final_log_probs[state] = torch.tensor(float(prob), dtype=torch.float64).log()
        return cls(num_states, arc_tensor, arc_log_probs, start_state, final_log_probs)

    @classmethod
    def from_alignment(cls, pdfs: Sequence[int]) -> "ChainGraph":
        """Linear chain accepting exactly the pdf sequence ``pdfs``."""
        pdfs = [int(p) for p in pdfs]
        arcs = [(t, t + 1, p, 1.0) for t, p in enumerate(pdfs)]
        return cls.from_arcs(len(pdfs) + 1, arcs, finals={len(pdfs): 1.0})

    @classmethod
    def from_pdf_sets(cls, allowed: Sequence[Sequence[int]]) -> "ChainGraph":
        """Lattice allowing any pdf from ``allowed[t]`` on frame ``t``."""
        arcs = [(t, t + 1, int(p), 1.0) for t, pdfs in enumerate(allowed) for p in pdfs]
        return cls.from_arcs(len(allowed) + 1, arcs, finals={len(allowed): 1.0})

    @property
    def num_arcs(self) -> int:
        return self.arcs.shape[0]

    @property
    def num_pdfs(self) -> int:
        """One more than the largest pdf label on any arc."""
        if self.num_arcs == 0:
            return 0
        return int(self.arcs[:, 2].max().item()) + 1

    def to(self, device=None, dtype=None) -> "ChainGraph":
        """Move arcs to ``device`` and weights to ``device``/``dtype``."""
        finals = self.final_log_probs
        if finals is not None:
            finals = finals.to(device=device, dtype=dtype)
        return ChainGraph(
            self.num_states,
            self.arcs.to(device=device),
            self.arc_log_probs.to(device=device, dtype=dtype),
            self.start_state,
            finals,
        )

    def transition_matrix(self) -> Tensor:
        r"""Dense :math:`(S, S)` matrix of summed arc probabilities."""
        trans = torch.zeros(
            self.num_states,
            self.num_states,
            dtype=self.arc_log_probs.dtype,
            device=self.arcs.device,
        )
        trans.index_put_(
            (self.arcs[:, 0], self.arcs[:, 1]), self.arc_log_probs.exp(), accumulate=True
        )
        return trans


class DenominatorGraph:
    r"""Denominator acceptor shared by every sequence of a minibatch.

    Besides holding the graph, this precomputes the initial-state
    distribution: the average state occupancy over the first
    ``num_initial_iters`` frames when starting in the start state. Forward
    passes over the denominator start from this distribution rather than from
    the start state, because training chunks begin mid-utterance.

    Args:
        fst (ChainGraph): the denominator acceptor.
        num_pdfs (int): number of output classes (columns of the network
            output).
        num_initial_iters (int, optional): number of frames to average over.
            Default: ``100``
    """

    def __init__(self, fst: ChainGraph, num_pdfs: int, num_initial_iters: int = 100):
        if fst.num_pdfs > num_pdfs:
            raise ValueError(
                f"denominator graph uses pdf {fst.num_pdfs - 1} but num_pdfs={num_pdfs}"
            )
        self.fst = fst
        self.num_pdfs = num_pdfs
        self.initial_probs = self._compute_initial_probs(num_initial_iters)

    @property
    def num_states(self) -> int:
        return self.fst.num_states

    def _compute_initial_probs(self, num_iters: int) -> Tensor:
        trans = self.fst.transition_matrix()
        cur = torch.zeros(self.fst.num_states, dtype=trans.dtype, device=trans.device)
        cur[self.fst.start_state] = 1.0
        avg = torch.zeros_like(cur)
        for _ in range(num_iters):
            avg += cur
            cur = cur @ trans
            tot = cur.sum()
            # Renormalize: the graph need not be stochastic.
            if tot > 0:
                cur = cur / tot
        return avg / avg.sum()

    def __repr__(self) -> str:
        return (
            f"DenominatorGraph(num_states={self.num_states}, "
            f"num_arcs={self.fst.num_arcs}, num_pdfs={self.num_pdfs})"
        )


def chain_forward(
    graph: ChainGraph,
    frame_scores: Tensor,
    initial_probs: Optional[Tensor] = None,
    leaky_hmm_coefficient: float = 0.0,
) -> Tensor:
    r"""chain_forward(graph, frame_scores, initial_probs=None, leaky_hmm_coefficient=0.0) -> Tensor

    Total log-probability of each sequence under ``graph``.

    Computes, for every sequence :math:`b`,

    .. math::
        \log \sum_{\pi} p_{\text{init}}(\pi_0)\,p_{\text{final}}(\pi_T)
        \prod_t w(\pi_t) \exp(x_{t,b,\text{pdf}(\pi_t)})

    with per-frame renormalization in probability space. Differentiable with
    respect to ``frame_scores``.

    Args:
        graph (ChainGraph): acceptor on the same device as ``frame_scores``.
        frame_scores (Tensor): scores of shape :math:`(T, B, P)`.
        initial_probs (Tensor, optional): initial state probabilities of
            shape :math:`(S,)`. Default: one-hot on ``graph.start_state``.
        leaky_hmm_coefficient (float, optional): after each frame, add
            ``coefficient * initial_probs * sum(alpha)`` to ``alpha``. Requires
            ``initial_probs``. Default: ``0.0``

    Returns:
        Tensor: log-probabilities of shape :math:`(B,)`; ``-inf`` or ``nan``
        for sequences the graph cannot accept.
    """
    validate_frame_scores(frame_scores)
    T, B, P = frame_scores.shape
    dtype, device = frame_scores.dtype, frame_scores.device
    src, dst, pdf = graph.arcs.to(device).unbind(-1)
    arc_probs = graph.arc_log_probs.to(device=device, dtype=dtype).exp()

    if initial_probs is None:
        alpha = torch.zeros(B, graph.num_states, dtype=dtype, device=device)
        alpha[:, graph.start_state] = 1.0
    else:
        alpha = initial_probs.to(device=device, dtype=dtype).expand(B, -1)
    leaky = None
    if leaky_hmm_coefficient > 0:
        if initial_probs is None:
            raise ValueError("leaky_hmm_coefficient requires initial_probs")
        leaky = leaky_hmm_coefficient * initial_probs.to(device=device, dtype=dtype)

    # The shift cancels exactly in the returned value, so keeping it out of
    # the autograd graph leaves the gradient unchanged.
    shift = frame_scores.detach().amax(dim=-1)
    exp_scores = (frame_scores - shift.unsqueeze(-1)).exp()

    log_prob = shift.sum(dim=0)
    for t in range(T):
        arc_mass = alpha[:, src] * arc_probs * exp_scores[t][:, pdf]
        alpha = torch.zeros(B, graph.num_states, dtype=dtype, device=device).index_add(
            1, dst, arc_mass
        )
        if leaky is not None:
            alpha = alpha + alpha.sum(dim=-1, keepdim=True) * leaky
        tot = alpha.sum(dim=-1, keepdim=True)
        log_prob = log_prob + tot.squeeze(-1).log()
        alpha = alpha / tot

    if graph.final_log_probs is None:
        final_mass = alpha.sum(dim=-1)
    else:
        finals = graph.final_log_probs.to(device=device, dtype=dtype).exp()
        final_mass = (alpha * finals).sum(dim=-1)
    return log_prob + final_mass.log()
