"""Thin wrapper around ``fhirpathpy`` with a cache of compiled expressions."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable

import fhirpathpy

from crtdl_extract.fhir import Resource


@lru_cache(maxsize=1024)
def _compiled(path: str) -> Callable[..., list[Any]]:
    return fhirpathpy.compile(path)


def evaluate(resource: Resource, path: str) -> list[Any]:
    """Evaluate a FHIRPath expression against a resource and return all matches."""
    return list(_compiled(path)(resource))


def exists(resource: Resource, path: str) -> bool:
    """Return ``True`` if the expression yields at least one element."""
    return any(element is not None for element in evaluate(resource, path))


def references(resource: Resource, path: str) -> list[str]:
    """Return the ``reference`` strings of all Reference elements found at *path*."""
    found: list[str] = []
    for element in evaluate(resource, path):
        if isinstance(element, dict) and element.get("reference"):
            found.append(element["reference"])
    return found
