"""Translate store and provider exceptions into HTTP errors."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from microscope.llm import ProviderError
from microscope.store import (
    FrozenItemError,
    NotFoundError,
    PhaseError,
    PlacementError,
    StoreError,
)


@contextmanager
def domain_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as e:
        raise HTTPException(404, str(e)) from e
    except (FrozenItemError, PhaseError, PlacementError) as e:
        raise HTTPException(409, str(e)) from e
    except ProviderError as e:
        raise HTTPException(502, str(e)) from e
    except (StoreError, ValueError) as e:
        raise HTTPException(400, str(e)) from e
