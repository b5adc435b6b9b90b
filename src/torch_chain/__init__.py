"""
torch-chain: Lattice-free sequence training objectives for PyTorch

This package computes chain (lattice-free MMI) training objectives and their
derivatives with respect to acoustic model outputs, for minibatches of
parallel fixed-length chunks.

Key Features:
- Lattice-free MMI with optional KL mixing towards reference posteriors
- End-to-end variant with HMM numerators
- Sequence minimum Bayes risk (SMBR) with posterior thresholding and
  silence handling
- L2 and exp-norm output penalties
- Non-finite objectives replaced by a fixed penalty with zeroed derivatives
- Autograd function and loss module for PyTorch training loops
"""

from .autograd import ChainObjfFunction, chain_objf
from .denominator import DenominatorComputation, DenominatorSmbrComputation
from .diagnostics import ChainDiagnostics, get_default_diagnostics, set_default_diagnostics
from .graph import ChainGraph, DenominatorGraph, chain_forward
from .nn import ChainLoss
from .numerator import GenericNumeratorComputation, NumeratorComputation
from .options import ChainTrainingOptions
from .regularization import add_l2_regularization
from .supervision import Supervision, merge_supervisions
from .training import (
    ChainObjfResult,
    SmbrObjfResult,
    compute_chain_objf_and_deriv,
    compute_chain_objf_and_deriv_e2e,
    compute_chain_smbr_objf_and_deriv,
    compute_kl_objf_and_deriv,
)

__version__ = "0.1.0"

__all__ = [
    # Objective functions
    "compute_chain_objf_and_deriv",
    "compute_chain_objf_and_deriv_e2e",
    "compute_kl_objf_and_deriv",
    "compute_chain_smbr_objf_and_deriv",
    "ChainObjfResult",
    "SmbrObjfResult",
    # Configuration and data
    "ChainTrainingOptions",
    "Supervision",
    "merge_supervisions",
    # Graphs
    "ChainGraph",
    "DenominatorGraph",
    "chain_forward",
    # Evaluators
    "NumeratorComputation",
    "GenericNumeratorComputation",
    "DenominatorComputation",
    "DenominatorSmbrComputation",
    "add_l2_regularization",
    # Diagnostics
    "ChainDiagnostics",
    "get_default_diagnostics",
    "set_default_diagnostics",
    # PyTorch integration
    "ChainObjfFunction",
    "chain_objf",
    "ChainLoss",
]
