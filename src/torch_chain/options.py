"""Configuration for chain objective computation.

Example usage:
    >>> from torch_chain.options import ChainTrainingOptions
    >>>
    >>> # Plain lattice-free MMI with a small output penalty
    >>> opts = ChainTrainingOptions(l2_regularize=5e-5)
    >>>
    >>> # MMI interpolated with a KL term towards reference posteriors
    >>> opts = ChainTrainingOptions(mmi_factor=0.5, kl_factor=0.5)
"""

import warnings
from dataclasses import dataclass, replace

__all__ = ["ChainTrainingOptions"]


@dataclass(frozen=True)
class ChainTrainingOptions:
    r"""Regularization strengths and feature toggles for chain training.

    Instances are immutable so the same object can be shared by every
    minibatch of a training run.

    Args:
        l2_regularize (float, optional): scale of the penalty on the raw
            output scores (or their exponentials, see ``norm_regularize``).
            Default: ``0.0``
        leaky_hmm_coefficient (float, optional): probability mass that leaks
            from every denominator state back to the initial-state
            distribution on each frame. Default: ``1e-5``
        xent_regularize (float, optional): scale of the cross-entropy branch
            gradient applied by :class:`~torch_chain.autograd.ChainObjfFunction`.
            Default: ``0.0``
        mmi_factor (float, optional): weight of the MMI numerator and
            denominator terms. Default: ``1.0``
        kl_factor (float, optional): weight of the KL term towards
            ``supervision.numerator_post_targets``. Default: ``0.0``
        ml_factor (float, optional): weight of the maximum-likelihood
            numerator term in SMBR training. Default: ``0.0``
        smbr_threshold (float, optional): numerator posteriors at or below
            this value are dropped before being used as SMBR accuracies.
            ``0`` disables thresholding. Default: ``0.0``
        one_silence_class (bool, optional): pool silence posteriors into a
            single class for SMBR accuracies. Default: ``False``
        exclude_silence (bool, optional): drop silence posteriors from SMBR
            accuracies. Default: ``False``
        norm_regularize (bool, optional): penalize :math:`\sum \exp(x)`
            instead of :math:`\frac{1}{2}\sum x^2`. Default: ``False``

    Raises:
        ValueError: If any scale or factor is negative.

    Warns:
        UserWarning: If both ``one_silence_class`` and ``exclude_silence`` are set.
    """

    l2_regularize: float = 0.0
    leaky_hmm_coefficient: float = 1.0e-05
    xent_regularize: float = 0.0
    mmi_factor: float = 1.0
    kl_factor: float = 0.0
    ml_factor: float = 0.0
    smbr_threshold: float = 0.0
    one_silence_class: bool = False
    exclude_silence: bool = False
    norm_regularize: bool = False

    def __post_init__(self):
        for name in (
            "l2_regularize",
            "leaky_hmm_coefficient",
            "xent_regularize",
            "mmi_factor",
            "kl_factor",
            "ml_factor",
            "smbr_threshold",
        ):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

        if self.one_silence_class and self.exclude_silence:
            warnings.warn(
                "one_silence_class and exclude_silence are both set; "
                "exclude_silence takes precedence",
                UserWarning,
                stacklevel=3,
            )

    def with_updates(self, **changes) -> "ChainTrainingOptions":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)
