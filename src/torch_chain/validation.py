"""Input validation utilities for chain objective computation.

These functions check caller-supplied shapes and values before any
forward-backward work starts. A failed check is a caller error and raises
immediately; it never takes part in the numerical fallback of the objective
functions.

Functions:
    validate_nnet_output: Validate the network output matrix against a supervision.
    validate_frame_scores: Validate a (T, B, P) score tensor for the forward pass.
    validate_deriv_buffer: Validate a caller-owned gradient buffer.
    validate_post_targets: Validate reference posterior targets.
    validate_silence_indices: Validate a silence index array.
    validate_device_consistency: Validate all tensors are on the same device.
"""

import warnings
from typing import Optional

import torch
from torch import Tensor

__all__ = [
    "validate_nnet_output",
    "validate_frame_scores",
    "validate_deriv_buffer",
    "validate_post_targets",
    "validate_silence_indices",
    "validate_device_consistency",
]


def validate_nnet_output(
    nnet_output: Tensor,
    num_sequences: int,
    frames_per_sequence: int,
    num_pdfs: Optional[int] = None,
    name: str = "nnet_output",
    warn_dtype: bool = True,
) -> None:
    r"""validate_nnet_output(nnet_output, num_sequences, frames_per_sequence, num_pdfs=None, name='nnet_output', warn_dtype=True) -> None

    Validates the network output matrix.

    Args:
        nnet_output (Tensor): tensor to validate, expected shape
          :math:`(\text{num\_sequences} \cdot \text{frames\_per\_sequence}, P)`
        num_sequences (int): number of parallel sequences
        frames_per_sequence (int): frames in each sequence
        num_pdfs (int, optional): expected number of columns. Default: ``None``
        name (str, optional): name to use in error messages. Default: ``"nnet_output"``
        warn_dtype (bool, optional): whether to warn if dtype is not floating
          point. Default: ``True``

    Raises:
        ValueError: If tensor is not 2D.
        ValueError: If the row count doesn't match the supervision.
        ValueError: If the column count doesn't match ``num_pdfs``.

    Warns:
        UserWarning: If dtype is not floating point (when ``warn_dtype=True``).

    Examples::

        >>> nnet_output = torch.randn(2 * 50, 10)
        >>> validate_nnet_output(nnet_output, num_sequences=2, frames_per_sequence=50)  # OK

        >>> validate_nnet_output(nnet_output, num_sequences=3, frames_per_sequence=50)
        ValueError: nnet_output has 100 rows, expected num_sequences * frames_per_sequence = 150
    """
    if nnet_output.ndim != 2:
        raise ValueError(f"{name} must be 2D (frames, pdfs), got {nnet_output.ndim}D")

    expected_rows = num_sequences * frames_per_sequence
    if nnet_output.shape[0] != expected_rows:
        raise ValueError(
            f"{name} has {nnet_output.shape[0]} rows, expected "
            f"num_sequences * frames_per_sequence = {expected_rows}"
        )

    if num_pdfs is not None and nnet_output.shape[1] != num_pdfs:
        raise ValueError(f"{name} has {nnet_output.shape[1]} columns, expected {num_pdfs}")

    if warn_dtype and not nnet_output.is_floating_point():
        warnings.warn(
            f"{name} should be floating point, got {nnet_output.dtype}",
            UserWarning,
            stacklevel=3,
        )


def validate_frame_scores(frame_scores: Tensor, name: str = "frame_scores") -> None:
    r"""validate_frame_scores(frame_scores, name='frame_scores') -> None

    Validates scores for :func:`~torch_chain.graph.chain_forward`.

    Raises:
        ValueError: If tensor is not 3D :math:`(T, B, P)` or :math:`T < 1`.
    """
    if frame_scores.ndim != 3:
        raise ValueError(f"{name} must be 3D (T, B, P), got {frame_scores.ndim}D")
    if frame_scores.shape[0] < 1:
        raise ValueError(f"{name} must have at least one frame")


def validate_deriv_buffer(
    deriv: Optional[Tensor],
    nnet_output: Tensor,
    name: str = "nnet_output_deriv",
) -> None:
    r"""validate_deriv_buffer(deriv, nnet_output, name='nnet_output_deriv') -> None

    Validates a caller-owned gradient buffer. ``None`` (not requested) passes.

    Raises:
        ValueError: If the buffer's shape differs from ``nnet_output``'s.
    """
    if deriv is None:
        return
    if deriv.shape != nnet_output.shape:
        raise ValueError(
            f"{name} shape {tuple(deriv.shape)} doesn't match "
            f"nnet_output shape {tuple(nnet_output.shape)}"
        )


def validate_post_targets(
    targets: Optional[Tensor],
    nnet_output: Tensor,
    name: str = "numerator_post_targets",
) -> None:
    r"""validate_post_targets(targets, nnet_output, name='numerator_post_targets') -> None

    Validates the dense reference posterior used by KL-style terms.

    Raises:
        ValueError: If targets are missing or empty.
        ValueError: If the targets' shape differs from ``nnet_output``'s.
    """
    if targets is None or targets.numel() == 0:
        raise ValueError(f"{name} is required but was not provided")

    if targets.shape[0] != nnet_output.shape[0]:
        raise ValueError(
            f"{name} has {targets.shape[0]} rows, "
            f"expected {nnet_output.shape[0]} (rows of nnet_output)"
        )

    if targets.shape != nnet_output.shape:
        raise ValueError(
            f"{name} shape {tuple(targets.shape)} doesn't match "
            f"nnet_output shape {tuple(nnet_output.shape)}"
        )


def validate_silence_indices(
    sil_indices: Tensor,
    num_pdfs: int,
    name: str = "sil_indices",
) -> None:
    r"""validate_silence_indices(sil_indices, num_pdfs, name='sil_indices') -> None

    Validates a silence index array: one integer entry per pdf, each either
    ``-1`` or its own position.

    Raises:
        ValueError: If the array is not 1D of length ``num_pdfs``.
        ValueError: If the array is not integer typed.
        ValueError: If any entry is neither ``-1`` nor its own index.

    Examples::

        >>> validate_silence_indices(torch.tensor([-1, 1, 2, -1]), num_pdfs=4)  # OK

        >>> validate_silence_indices(torch.tensor([0, 2, 1]), num_pdfs=3)
        ValueError: sil_indices entries must be -1 or their own index, bad positions [1, 2]
    """
    if sil_indices.ndim != 1 or sil_indices.shape[0] != num_pdfs:
        raise ValueError(
            f"{name} must be 1D with {num_pdfs} entries, got shape {tuple(sil_indices.shape)}"
        )

    if sil_indices.is_floating_point() or sil_indices.dtype == torch.bool:
        raise ValueError(f"{name} must be an integer tensor, got {sil_indices.dtype}")

    own = torch.arange(num_pdfs, device=sil_indices.device)
    bad = (sil_indices != -1) & (sil_indices != own)
    if bad.any():
        positions = bad.nonzero().flatten().tolist()
        raise ValueError(
            f"{name} entries must be -1 or their own index, bad positions {positions}"
        )


def validate_device_consistency(
    *tensors: Tensor,
    names: Optional[list[str]] = None,
) -> None:
    r"""validate_device_consistency(*tensors, names=None) -> None

    Validates that all tensors are on the same device.

    Args:
        *tensors (Tensor): tensors to check (``None`` values are skipped)
        names (list[str], optional): list of names for error messages.
          Default: ``None``

    Raises:
        ValueError: If tensors are on different devices.
    """
    valid_tensors = [t for t in tensors if t is not None]
    if len(valid_tensors) <= 1:
        return

    devices = [t.device for t in valid_tensors]
    if len({str(d) for d in devices}) > 1:
        if names is not None:
            valid_names = [n for n, t in zip(names, tensors, strict=False) if t is not None]
            device_map = dict(zip(valid_names, devices, strict=True))
        else:
            device_map = {f"tensor_{i}": d for i, d in enumerate(devices)}
        raise ValueError(f"Device mismatch: {device_map}")
