"""Identifier safety helpers.

Values always travel as bound parameters; table and column names cannot be
bound, so every identifier that reaches a statement passes through here first.
"""

import re

from .errors import IdentifierError

# Letters, digits and underscore only, not starting with a digit
_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def validate_identifier(name: str, kind: str = 'column') -> str:
    """Validate a table or column name.

    Args:
        name: Identifier to validate
        kind: What the identifier names, used in the error message

    Returns:
        The validated identifier

    Raises:
        IdentifierError: If the name contains characters outside [A-Za-z0-9_]
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise IdentifierError(f"Invalid {kind} name {name!r}")
    return name


def quote_identifier(name: str, kind: str = 'column') -> str:
    """Validate and double-quote an identifier for use in a statement."""
    return f'"{validate_identifier(name, kind)}"'

