"""Conversion of selector expressions into Kubernetes client models.

The Kubernetes client is an optional dependency (the `kube` extra) and is imported only
when a conversion is requested. Label selector requirements in the Kubernetes API only
know the four set based operators, so equality expressions are mapped onto their
single-value set equivalents: `a=b` becomes `a In (b)` and `a!=b` becomes
`a NotIn (b)`.
"""

__all__ = (
    "to_kube",
    "to_kube_selector",
)

from collections.abc import Iterable
from types import ModuleType
from typing import TYPE_CHECKING

from selector_expressions import Expression, Operator

if TYPE_CHECKING:
    from kubernetes.client import V1LabelSelector, V1LabelSelectorRequirement

KUBE_OPERATORS = {
    Operator.IN: "In",
    Operator.NOT_IN: "NotIn",
    Operator.EQUAL: "In",
    Operator.NOT_EQUAL: "NotIn",
    Operator.EXISTS: "Exists",
    Operator.DOES_NOT_EXIST: "DoesNotExist",
}


def kube_client() -> ModuleType:
    try:
        from kubernetes import client
    except ImportError as e:
        raise ImportError(
            "the Kubernetes client is required for this conversion, "
            "install it with the 'kube' extra"
        ) from e
    return client


def to_kube(expression: Expression) -> "V1LabelSelectorRequirement":
    """Converts one expression into a label selector requirement.

    Presence expressions carry no values; every other expression carries its values in
    sorted order.

    Raises:
        ValueError: If a set expression has no values, which the Kubernetes API
            rejects for `In` and `NotIn` requirements.
    """
    is_set = expression.operator in (Operator.IN, Operator.NOT_IN)
    if is_set and not expression.operands:
        raise ValueError(f"cannot convert '{expression}': set has no values")

    client = kube_client()
    return client.V1LabelSelectorRequirement(
        key=expression.key,
        operator=KUBE_OPERATORS[expression.operator],
        values=list(expression.operands) or None,
    )


def to_kube_selector(expressions: Iterable[Expression]) -> "V1LabelSelector":
    """Converts a sequence of expressions into a label selector.

    Every expression becomes one entry of `match_expressions`, in order.
    """
    client = kube_client()
    return client.V1LabelSelector(
        match_expressions=[to_kube(expression) for expression in expressions],
    )
