r"""Shaping of the numerator posterior before it is used as SMBR accuracy.

The numerator posterior :math:`\gamma^{\text{num}}_{t,p}` acts as the
accuracy of predicting pdf :math:`p` at frame :math:`t`. Three optional
transformations sharpen or restrict it:

- :func:`threshold_posteriors` drops low-probability reference pdfs and
  renormalizes.
- :func:`exclude_silence_posteriors` removes columns through a silence index
  array.
- :func:`pool_silence_posteriors` merges the columns selected by a silence
  index array into one pooled class.

Silence index arrays hold one entry per pdf: ``-1`` (the sentinel) or the
pdf's own index. They act as column-selection maps: ``out[:, j] =
post[:, sil_indices[j]]``, with sentinel columns reading as zero.
"""

import logging
from typing import Optional

import torch
from torch import Tensor

from .options import ChainTrainingOptions
from .validation import validate_silence_indices

__all__ = [
    "threshold_posteriors",
    "exclude_silence_posteriors",
    "pool_silence_posteriors",
    "shape_numerator_posteriors",
    "sparse_posterior",
]

logger = logging.getLogger(__name__)

# Added to row sums before renormalizing thresholded posteriors.
ROW_SUM_FLOOR = 1.0e-08


def threshold_posteriors(post: Tensor, threshold: float) -> Tensor:
    r"""Zero entries :math:`\le` ``threshold`` and renormalize each row.

    Raises:
        ValueError: If ``threshold`` does not exceed ``1 / num_pdfs``.
    """
    num_pdfs = post.shape[-1]
    if threshold <= 1.0 / num_pdfs:
        raise ValueError(
            f"smbr_threshold must exceed 1/num_pdfs = {1.0 / num_pdfs:.4g}, got {threshold}"
        )
    kept = post * (post - threshold > 0).to(post.dtype)
    normalizer = kept.sum(dim=-1, keepdim=True) + ROW_SUM_FLOOR
    return kept / normalizer


def _select_columns(post: Tensor, sil_indices: Tensor) -> Tensor:
    index = sil_indices.to(device=post.device, dtype=torch.long)
    selected = post[:, index.clamp(min=0)]
    return selected * (index >= 0).to(post.dtype)


def exclude_silence_posteriors(post: Tensor, sil_indices: Tensor) -> Tensor:
    """Copy columns through ``sil_indices``; sentinel columns become zero."""
    validate_silence_indices(sil_indices, post.shape[-1])
    return _select_columns(post, sil_indices)


def pool_silence_posteriors(post: Tensor, sil_indices: Tensor) -> Tensor:
    """Replace every selected column with the row sum over selected columns.

    Columns whose entry is the sentinel keep their values.
    """
    validate_silence_indices(sil_indices, post.shape[-1])
    selected = _select_columns(post, sil_indices)
    pooled = selected.sum(dim=-1, keepdim=True)
    mask = (sil_indices.to(post.device) >= 0).unsqueeze(0)
    return torch.where(mask, pooled.expand_as(post), post)


def shape_numerator_posteriors(
    post: Tensor,
    opts: ChainTrainingOptions,
    sil_indices: Optional[Tensor] = None,
) -> Tensor:
    """Apply the thresholding and silence handling selected by ``opts``.

    Thresholding comes first. Silence exclusion takes precedence over
    pooling; both need ``sil_indices``.
    """
    if opts.smbr_threshold > 0:
        post = threshold_posteriors(post, opts.smbr_threshold)

    if sil_indices is not None and opts.exclude_silence:
        post = exclude_silence_posteriors(post, sil_indices)
    elif sil_indices is not None and opts.one_silence_class:
        post = pool_silence_posteriors(post, sil_indices)
    elif sil_indices is None and (opts.exclude_silence or opts.one_silence_class):
        logger.debug("silence handling requested but no sil_indices given; skipping")
    return post


def sparse_posterior(post: Tensor, min_post: float = 0.01) -> list[list[tuple[int, float]]]:
    """Per-row ``(pdf, posterior)`` pairs with posterior ``>= min_post``."""
    rows = []
    for row in post.detach().cpu():
        idx = (row >= min_post).nonzero().flatten().tolist()
        rows.append([(j, round(float(row[j]), 4)) for j in idx])
    return rows
