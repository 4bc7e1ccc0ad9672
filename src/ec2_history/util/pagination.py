from __future__ import annotations

from typing import Callable, Generator, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")


def paginate(
    fetch: Callable[[Optional[str]], Tuple[Sequence[T], Optional[str]]],
    *,
    max_pages: Optional[int] = None,
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(next_token) function.
    The fetch function must return (items, next_token). If next_token is
    falsy or repeats the previous token, pagination stops.
    max_pages caps the number of requests.
    """
    token: Optional[str] = None
    pages = 0
    while True:
        items, next_token = fetch(token)
        pages += 1
        for it in items:
            yield it
        if not next_token or next_token == token:
            break
        if max_pages is not None and pages >= max_pages:
            break
        token = next_token
