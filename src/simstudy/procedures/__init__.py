# Copyright (c) Syntropy Systems
"""Procedure contract and reference generate/analyze procedures."""

from .base import (
    Dataset,
    PBelow,
    Procedure,
    SignificancePredicate,
    as_procedure,
    callable_identity,
    p_below,
    procedure,
    resolve_callable,
    safely,
    validate_procedures,
)

__all__ = [
    "Dataset",
    "PBelow",
    "Procedure",
    "SignificancePredicate",
    "as_procedure",
    "callable_identity",
    "p_below",
    "procedure",
    "resolve_callable",
    "safely",
    "validate_procedures",
]
