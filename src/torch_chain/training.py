r"""Chain objective functions and their derivatives.

Four entry points combine the numerator and denominator evaluators into a
training objective:

- :func:`compute_chain_objf_and_deriv`: lattice-free MMI, optionally mixed
  with a KL term towards reference posteriors.
- :func:`compute_chain_objf_and_deriv_e2e`: end-to-end variant with an HMM
  numerator.
- :func:`compute_kl_objf_and_deriv`: KL divergence towards reference
  posteriors.
- :func:`compute_chain_smbr_objf_and_deriv`: sequence minimum Bayes risk.

All of them report ``weight = supervision.weight * num_sequences *
frames_per_sequence`` so callers can normalize per frame. The objectives are
to be maximized; derivative buffers hold derivatives of ``objf + l2_term``
(plus ``mmi_objf`` for SMBR) with respect to ``nnet_output``.

Numerical failures (non-finite objective, or a collaborator reporting
failure) never raise. The objective is replaced by a fixed per-frame penalty,
derivative buffers are zeroed and a warning is logged, so a single bad
minibatch cannot push non-finite values into the optimizer. Precondition
violations raise :class:`ValueError`.

Example usage:
    >>> opts = ChainTrainingOptions(l2_regularize=5e-5)
    >>> deriv = torch.zeros_like(nnet_output)
    >>> result = compute_chain_objf_and_deriv(
    ...     opts, den_graph, supervision, nnet_output, nnet_output_deriv=deriv
    ... )
    >>> per_frame = (result.objf + result.l2_term) / result.weight
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .denominator import DenominatorComputation, DenominatorSmbrComputation
from .diagnostics import ChainDiagnostics, get_default_diagnostics
from .graph import DenominatorGraph
from .numerator import GenericNumeratorComputation, NumeratorComputation
from .options import ChainTrainingOptions
from .regularization import add_l2_regularization
from .smbr import shape_numerator_posteriors, sparse_posterior
from .supervision import Supervision
from .validation import (
    validate_deriv_buffer,
    validate_nnet_output,
    validate_post_targets,
    validate_silence_indices,
)

__all__ = [
    "ChainObjfResult",
    "SmbrObjfResult",
    "compute_chain_objf_and_deriv",
    "compute_chain_objf_and_deriv_e2e",
    "compute_kl_objf_and_deriv",
    "compute_chain_smbr_objf_and_deriv",
    "DEFAULT_OBJF_PER_FRAME",
]

logger = logging.getLogger(__name__)

# Objective per frame reported in place of a non-finite one.
DEFAULT_OBJF_PER_FRAME = -10.0


@dataclass
class ChainObjfResult:
    """Result of a chain objective computation.

    Attributes:
        objf: weighted objective (log-probability units).
        l2_term: output penalty, ``0.0`` when disabled.
        weight: ``supervision.weight * num_sequences * frames_per_sequence``.
        nnet_output_deriv: the caller's derivative buffer, or ``None`` if
            not requested.
        xent_output_deriv: the caller's cross-entropy buffer, or ``None`` if
            not requested.
    """

    objf: float
    l2_term: float
    weight: float
    nnet_output_deriv: Optional[Tensor] = None
    xent_output_deriv: Optional[Tensor] = None

    def as_tensor(self, device=None, dtype=None) -> Tensor:
        """``[objf, l2_term, weight]`` as a float tensor."""
        return torch.tensor([self.objf, self.l2_term, self.weight], device=device, dtype=dtype)


@dataclass
class SmbrObjfResult(ChainObjfResult):
    """Result of an SMBR objective computation.

    ``objf`` holds the accuracy term; ``mmi_objf`` the MMI/ML term computed
    from the same passes.
    """

    mmi_objf: float = 0.0


def _check_inputs(
    supervision: Supervision,
    nnet_output: Tensor,
    den_graph: DenominatorGraph,
    nnet_output_deriv: Optional[Tensor],
) -> None:
    validate_nnet_output(
        nnet_output,
        supervision.num_sequences,
        supervision.frames_per_sequence,
        num_pdfs=den_graph.num_pdfs,
    )
    validate_deriv_buffer(nnet_output_deriv, nnet_output)


def _allocate_xent(xent_output_deriv: Optional[Tensor], nnet_output: Tensor) -> None:
    # Sized only once the denominator's working memory is gone.
    if xent_output_deriv is not None:
        xent_output_deriv.resize_(nnet_output.shape).zero_()


def _zero_buffers(*buffers: Optional[Tensor]) -> None:
    for buf in buffers:
        if buf is not None:
            buf.zero_()


def _add_post_targets(
    supervision: Supervision,
    nnet_output: Tensor,
    scale: float,
    nnet_output_deriv: Optional[Tensor],
    xent_output_deriv: Optional[Tensor],
) -> None:
    validate_post_targets(supervision.numerator_post_targets, nnet_output)
    targets = supervision.numerator_post_targets
    if xent_output_deriv is not None:
        xent_output_deriv.copy_(targets)
        xent_output_deriv.mul_(scale)
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(xent_output_deriv)
    elif nnet_output_deriv is not None:
        nnet_output_deriv.add_(targets.to(nnet_output_deriv.dtype), alpha=scale)


def compute_chain_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    diagnostics: Optional[ChainDiagnostics] = None,
) -> ChainObjfResult:
    r"""compute_chain_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None, diagnostics=None) -> ChainObjfResult

    Lattice-free MMI objective, optionally mixed with a KL term.

    .. math::
        \text{objf} = w \log p_{\text{num}}
        - w (\text{mmi} + \text{kl}) \log p_{\text{den}}

    where the numerator term is present only when ``mmi_factor > 0`` and is
    not scaled by it. When ``kl_factor > 0`` the derivative also receives
    :math:`w \cdot \text{kl}` times the reference posteriors. Delegates to
    :func:`compute_chain_objf_and_deriv_e2e` when ``supervision.e2e`` is set.

    Args:
        opts (ChainTrainingOptions): training options.
        den_graph (DenominatorGraph): denominator graph.
        supervision (Supervision): minibatch reference.
        nnet_output (Tensor): output scores of shape
          :math:`(\text{num\_sequences} \cdot \text{frames\_per\_sequence}, P)`,
          frame-major. Not modified.
        nnet_output_deriv (Tensor, optional): buffer of the same shape that
          receives the derivative; ``None`` skips the denominator backward
          pass and, without ``xent_output_deriv``, the numerator one.
          Default: ``None``
        xent_output_deriv (Tensor, optional): buffer resized to
          ``nnet_output``'s shape that receives the numerator (and KL) part of
          the derivative, for use as a cross-entropy regularizer.
          Default: ``None``
        diagnostics (ChainDiagnostics, optional): diagnostics sink.
          Default: :func:`~torch_chain.diagnostics.get_default_diagnostics`

    Returns:
        ChainObjfResult: objective, penalty, weight and the buffers.

    Raises:
        ValueError: If shapes are inconsistent, or ``kl_factor > 0`` without
          reference posteriors.
    """
    if supervision.e2e:
        return compute_chain_objf_and_deriv_e2e(
            opts,
            den_graph,
            supervision,
            nnet_output,
            nnet_output_deriv,
            xent_output_deriv,
            diagnostics,
        )

    diagnostics = diagnostics if diagnostics is not None else get_default_diagnostics()
    _check_inputs(supervision, nnet_output, den_graph, nnet_output_deriv)
    if opts.kl_factor > 0.0:
        validate_post_targets(supervision.numerator_post_targets, nnet_output)

    ok = True
    num_logprob_weighted = 0.0
    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    den_scale = supervision.weight * (opts.mmi_factor + opts.kl_factor)
    with DenominatorComputation(
        opts, den_graph, supervision.num_sequences, nnet_output
    ) as denominator:
        den_logprob_weighted = den_scale * denominator.forward()
        if nnet_output_deriv is not None:
            ok = denominator.backward(-den_scale, nnet_output_deriv)

    _allocate_xent(xent_output_deriv, nnet_output)

    if opts.kl_factor > 0.0:
        _add_post_targets(
            supervision,
            nnet_output,
            supervision.weight * opts.kl_factor,
            nnet_output_deriv,
            xent_output_deriv,
        )

    if opts.mmi_factor > 0.0:
        numerator = NumeratorComputation(supervision, nnet_output)
        # supervision.weight is already included in both the log-prob and
        # the derivative.
        num_logprob_weighted = numerator.forward()
        if xent_output_deriv is not None:
            numerator.backward(xent_output_deriv)
            if nnet_output_deriv is not None:
                nnet_output_deriv.add_(xent_output_deriv)
        elif nnet_output_deriv is not None:
            numerator.backward(nnet_output_deriv)

    objf = num_logprob_weighted - den_logprob_weighted
    weight = supervision.total_weight
    if not math.isfinite(objf) or not ok:
        _zero_buffers(nnet_output_deriv, xent_output_deriv)
        logger.warning(
            "Objective function is %s and denominator computation (if done) returned %s, "
            "setting objective function to %s per frame.",
            objf,
            ok,
            DEFAULT_OBJF_PER_FRAME,
        )
        objf = DEFAULT_OBJF_PER_FRAME * weight

    diagnostics.log_derivs_per_frame(nnet_output_deriv, supervision.num_sequences)

    l2_term = add_l2_regularization(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjfResult(objf, l2_term, weight, nnet_output_deriv, xent_output_deriv)


def compute_chain_objf_and_deriv_e2e(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    diagnostics: Optional[ChainDiagnostics] = None,
) -> ChainObjfResult:
    r"""compute_chain_objf_and_deriv_e2e(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None, diagnostics=None) -> ChainObjfResult

    End-to-end objective :math:`w \log p_{\text{num}} - w \log p_{\text{den}}`
    with an HMM numerator.

    The numerator may fail (no admissible path, non-finite posteriors); that
    is handled like a denominator failure. The output penalty is only applied
    when the numerator succeeded.

    Arguments and return value as for :func:`compute_chain_objf_and_deriv`.
    """
    diagnostics = diagnostics if diagnostics is not None else get_default_diagnostics()
    _check_inputs(supervision, nnet_output, den_graph, nnet_output_deriv)

    denominator_ok = True
    numerator_ok = True
    weight = supervision.total_weight

    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    with DenominatorComputation(
        opts, den_graph, supervision.num_sequences, nnet_output
    ) as denominator:
        den_logprob_weighted = supervision.weight * denominator.forward()
        if nnet_output_deriv is not None:
            denominator_ok = denominator.backward(-supervision.weight, nnet_output_deriv)

    _allocate_xent(xent_output_deriv, nnet_output)

    numerator = GenericNumeratorComputation(supervision, nnet_output)
    num_logprob_weighted = numerator.forward()
    if weight > 0:
        diagnostics.vlog(2, "Numerator logprob per frame: %s", num_logprob_weighted / weight)
    numerator_ok = math.isfinite(num_logprob_weighted)
    if not numerator_ok:
        logger.info("Numerator forward failed.")

    if xent_output_deriv is not None and numerator_ok:
        numerator_ok = numerator.backward(xent_output_deriv)
        if not numerator_ok:
            logger.info("Numerator backward failed.")
        if nnet_output_deriv is not None:
            nnet_output_deriv.add_(xent_output_deriv)
    elif nnet_output_deriv is not None and numerator_ok:
        numerator_ok = numerator.backward(nnet_output_deriv)
        if not numerator_ok:
            logger.info("Numerator backward failed.")

    objf = num_logprob_weighted - den_logprob_weighted
    if not math.isfinite(objf) or not denominator_ok or not numerator_ok:
        _zero_buffers(nnet_output_deriv, xent_output_deriv)
        logger.warning(
            "Objective function is %s and denominator computation (if done) returned %s "
            "and numerator computation returned %s, setting objective function to %s per frame.",
            objf,
            denominator_ok,
            numerator_ok,
            DEFAULT_OBJF_PER_FRAME,
        )
        objf = DEFAULT_OBJF_PER_FRAME * weight

    diagnostics.log_derivs_per_frame(nnet_output_deriv, supervision.num_sequences)

    l2_term = 0.0
    if numerator_ok:
        l2_term = add_l2_regularization(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjfResult(objf, l2_term, weight, nnet_output_deriv, xent_output_deriv)


def compute_kl_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    diagnostics: Optional[ChainDiagnostics] = None,
) -> ChainObjfResult:
    r"""compute_kl_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None, diagnostics=None) -> ChainObjfResult

    KL objective towards ``supervision.numerator_post_targets``.

    The reported objective is :math:`-w \log p_{\text{den}}`; the reference
    posteriors enter only through the derivative, which is
    :math:`w (\gamma^{\text{ref}} - \gamma^{\text{den}})`.

    Arguments and return value as for :func:`compute_chain_objf_and_deriv`.

    Raises:
        ValueError: If reference posteriors are missing or mis-shaped.
    """
    diagnostics = diagnostics if diagnostics is not None else get_default_diagnostics()
    validate_post_targets(supervision.numerator_post_targets, nnet_output)
    _check_inputs(supervision, nnet_output, den_graph, nnet_output_deriv)

    ok = True
    if nnet_output_deriv is not None:
        nnet_output_deriv.zero_()

    with DenominatorComputation(
        opts, den_graph, supervision.num_sequences, nnet_output
    ) as denominator:
        den_logprob_weighted = supervision.weight * denominator.forward()
        if nnet_output_deriv is not None:
            ok = denominator.backward(-supervision.weight, nnet_output_deriv)

    _allocate_xent(xent_output_deriv, nnet_output)
    _add_post_targets(
        supervision, nnet_output, supervision.weight, nnet_output_deriv, xent_output_deriv
    )

    objf = -den_logprob_weighted
    weight = supervision.total_weight
    if not math.isfinite(objf) or not ok:
        _zero_buffers(nnet_output_deriv, xent_output_deriv)
        logger.warning(
            "Objective function is %s and denominator computation (if done) returned %s, "
            "setting objective function to %s per frame.",
            objf,
            ok,
            DEFAULT_OBJF_PER_FRAME,
        )
        objf = DEFAULT_OBJF_PER_FRAME * weight

    diagnostics.log_derivs_per_frame(nnet_output_deriv, supervision.num_sequences)

    l2_term = add_l2_regularization(opts, supervision, nnet_output, nnet_output_deriv)
    return ChainObjfResult(objf, l2_term, weight, nnet_output_deriv, xent_output_deriv)


def compute_chain_smbr_objf_and_deriv(
    opts: ChainTrainingOptions,
    den_graph: DenominatorGraph,
    supervision: Supervision,
    nnet_output: Tensor,
    nnet_output_deriv: Optional[Tensor] = None,
    xent_output_deriv: Optional[Tensor] = None,
    sil_indices: Optional[Tensor] = None,
    diagnostics: Optional[ChainDiagnostics] = None,
) -> SmbrObjfResult:
    r"""compute_chain_smbr_objf_and_deriv(opts, den_graph, supervision, nnet_output, nnet_output_deriv=None, xent_output_deriv=None, sil_indices=None, diagnostics=None) -> SmbrObjfResult

    Sequence minimum Bayes risk objective.

    The numerator posterior :math:`\gamma^{\text{num}}` (which includes the
    supervision weight) is shaped by
    :func:`~torch_chain.smbr.shape_numerator_posteriors` and used as per-frame
    accuracy in the denominator pass. Outputs:

    - ``objf`` :math:`= w \sum \gamma^{\text{den}} \gamma^{\text{num}}_{\text{shaped}}`
    - ``mmi_objf`` :math:`= (\text{mmi} + \text{ml}) w \log p_{\text{num}}
      - \text{mmi}\, w \log p_{\text{den}}`

    On failure ``objf`` is set to ``0`` and ``mmi_objf`` absorbs the whole
    penalty, ``-(mmi_factor + ml_factor) * 10 * weight``.

    Args:
        sil_indices (Tensor, optional): silence index array, see
          :mod:`torch_chain.smbr`. Default: ``None``

    Other arguments as for :func:`compute_chain_objf_and_deriv`.

    Raises:
        ValueError: If shapes are inconsistent, ``smbr_threshold`` is not
          above ``1 / num_pdfs``, or ``sil_indices`` is malformed.
    """
    diagnostics = diagnostics if diagnostics is not None else get_default_diagnostics()
    _check_inputs(supervision, nnet_output, den_graph, nnet_output_deriv)
    num_factor = opts.mmi_factor + opts.ml_factor
    num_pdfs = nnet_output.shape[1]
    if 0 < opts.smbr_threshold <= 1.0 / num_pdfs:
        raise ValueError(
            f"smbr_threshold must exceed 1/num_pdfs = {1.0 / num_pdfs:.4g}, "
            f"got {opts.smbr_threshold}"
        )
    if sil_indices is not None:
        validate_silence_indices(sil_indices, num_pdfs)

    # Same frame-major row order as nnet_output.
    numerator_post = torch.zeros_like(nnet_output)
    numerator = NumeratorComputation(supervision, nnet_output)
    num_logprob_weighted = num_factor * numerator.forward()
    numerator.backward(numerator_post)
    if diagnostics.enabled(2):
        diagnostics.log_sparse_posterior(sparse_posterior(numerator_post))

    if nnet_output_deriv is not None and num_factor != 0.0:
        nnet_output_deriv.copy_(numerator_post)
        nnet_output_deriv.mul_(num_factor)

    if xent_output_deriv is not None:
        xent_output_deriv.resize_(nnet_output.shape).copy_(numerator_post)

    numerator_post = shape_numerator_posteriors(numerator_post, opts, sil_indices)

    with DenominatorSmbrComputation(
        opts, den_graph, supervision.num_sequences, nnet_output, numerator_post
    ) as denominator:
        smbr_objf, den_logprob_negated = denominator.forward_smbr()

        ok = True
        if nnet_output_deriv is not None:
            if num_factor == 0.0:
                nnet_output_deriv.zero_()
            ok = denominator.backward_smbr(supervision.weight, nnet_output_deriv)

    objf = supervision.weight * smbr_objf
    mmi_objf = supervision.weight * den_logprob_negated + num_logprob_weighted
    weight = supervision.total_weight

    total_objf = objf + mmi_objf
    if not math.isfinite(total_objf) or not ok:
        _zero_buffers(nnet_output_deriv, xent_output_deriv)
        default_objf = num_factor * DEFAULT_OBJF_PER_FRAME
        logger.warning(
            "Objective function is %s and denominator computation (if done) returned %s, "
            "setting objective function to %s per frame.",
            total_objf,
            ok,
            default_objf,
        )
        mmi_objf = default_objf * weight
        objf = 0.0

    diagnostics.log_derivs_per_frame(nnet_output_deriv, supervision.num_sequences, sample=False)

    l2_term = add_l2_regularization(opts, supervision, nnet_output, nnet_output_deriv)
    return SmbrObjfResult(
        objf, l2_term, weight, nnet_output_deriv, xent_output_deriv, mmi_objf=mmi_objf
    )
