"""Parser registry for bank CSV parsers.

Each parser is a module exposing a ``parse(file_path, account)`` function
that returns a :class:`~rent_tracker.models.StageResult`.  ``PARSERS`` maps
the names accepted by ``rent classify --parser`` to parse functions.
"""

from __future__ import annotations

from collections.abc import Callable

from rent_tracker.parsers import bofa, generic

PARSERS: dict[str, Callable] = {
    "bofa": bofa.parse,
    "generic": generic.parse,
}


def get_parser(name: str) -> Callable:
    """Look up a parser by name.

    Raises:
        KeyError: If no parser is registered under the given name.
    """
    return PARSERS[name]
