"""Per-minibatch reference data for chain training."""

from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch
from torch import Tensor

from .graph import ChainGraph

__all__ = ["Supervision", "merge_supervisions"]


@dataclass
class Supervision:
    r"""Reference data for a minibatch of parallel sequences.

    Rows of the network output are ordered frame-major: row
    ``t * num_sequences + s`` is frame ``t`` of sequence ``s``.

    Attributes:
        weight (float): scale applied to every objective term of this minibatch.
        num_sequences (int): number of parallel sequences.
        frames_per_sequence (int): frames in each sequence.
        fsts (list[ChainGraph]): one numerator acceptor per sequence: a
            reference path or lattice, or an HMM acceptor when ``e2e`` is set.
        e2e (bool): use the end-to-end numerator. Default: ``False``
        numerator_post_targets (Tensor or None): dense reference posteriors of
            shape :math:`(\text{num\_sequences} \cdot \text{frames\_per\_sequence}, P)`,
            required by KL-style terms. Default: ``None``
    """

    weight: float
    num_sequences: int
    frames_per_sequence: int
    fsts: list[ChainGraph] = field(default_factory=list)
    e2e: bool = False
    numerator_post_targets: Optional[Tensor] = None

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"weight must be non-negative, got {self.weight}")
        if self.num_sequences < 1:
            raise ValueError(f"num_sequences must be >= 1, got {self.num_sequences}")
        if self.frames_per_sequence < 1:
            raise ValueError(f"frames_per_sequence must be >= 1, got {self.frames_per_sequence}")
        if self.fsts and len(self.fsts) != self.num_sequences:
            raise ValueError(
                f"expected one fst per sequence ({self.num_sequences}), got {len(self.fsts)}"
            )
        if self.numerator_post_targets is not None:
            rows = self.num_sequences * self.frames_per_sequence
            if self.numerator_post_targets.shape[0] != rows:
                raise ValueError(
                    f"numerator_post_targets has {self.numerator_post_targets.shape[0]} rows, "
                    f"expected {rows}"
                )

    @property
    def num_frames(self) -> int:
        return self.num_sequences * self.frames_per_sequence

    @property
    def total_weight(self) -> float:
        """Frame-normalizing weight reported by every objective function."""
        return self.weight * self.num_sequences * self.frames_per_sequence

    def sequence_rows(self, seq: int) -> slice:
        """Rows of the network output belonging to sequence ``seq``."""
        return slice(seq, None, self.num_sequences)


def merge_supervisions(supervisions: Sequence[Supervision]) -> Supervision:
    """Merge supervisions into one minibatch record.

    All inputs must share ``weight``, ``frames_per_sequence`` and ``e2e``.
    Sequences keep their input order; posterior targets, if present on every
    input, are interleaved into frame-major order.
    """
    if not supervisions:
        raise ValueError("cannot merge an empty list of supervisions")

    first = supervisions[0]
    for sup in supervisions[1:]:
        if (sup.weight, sup.frames_per_sequence, sup.e2e) != (
            first.weight,
            first.frames_per_sequence,
            first.e2e,
        ):
            raise ValueError(
                "supervisions to merge must share weight, frames_per_sequence and e2e"
            )

    fsts = [fst for sup in supervisions for fst in sup.fsts]
    num_sequences = sum(sup.num_sequences for sup in supervisions)

    targets = None
    have_targets = [sup.numerator_post_targets is not None for sup in supervisions]
    if any(have_targets):
        if not all(have_targets):
            raise ValueError("either all or none of the supervisions must carry posterior targets")
        T = first.frames_per_sequence
        # (T, n_i, P) per input, concatenated along the sequence axis.
        per_frame = [
            sup.numerator_post_targets.view(T, sup.num_sequences, -1) for sup in supervisions
        ]
        targets = torch.cat(per_frame, dim=1).reshape(T * num_sequences, -1)

    return Supervision(
        weight=first.weight,
        num_sequences=num_sequences,
        frames_per_sequence=first.frames_per_sequence,
        fsts=fsts,
        e2e=first.e2e,
        numerator_post_targets=targets,
    )
