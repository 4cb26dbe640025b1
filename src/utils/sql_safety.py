"""
SQL identifier safety for dynamically addressed tables.

Names from configuration must be regular identifiers. Names read from the
SQL Server catalog may be any valid delimited identifier (spaces, non-ASCII,
brackets) and are quoted with ``]`` escaped instead. Values are always bound
as parameters.
"""

import re

# SQL Server regular identifiers: letter, underscore, @ or # first
VALID_IDENTIFIER = re.compile(r"^[A-Za-z_@#][A-Za-z0-9_@#$]{0,127}$")
MAX_IDENTIFIER_LENGTH = 128


def validate_identifier(identifier: str) -> None:
    """
    Validate a single SQL Server identifier.

    Raises:
        ValueError: If the identifier is empty or contains characters
            outside the regular-identifier set
    """
    if not identifier:
        raise ValueError("SQL identifier cannot be empty")

    if not VALID_IDENTIFIER.match(identifier):
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            "Only letters, digits, _, @, # and $ are allowed, "
            "and it must not start with a digit or $."
        )


def quote_identifier(identifier: str) -> str:
    """Validate and bracket-quote one identifier: ``Orders`` -> ``[Orders]``."""
    validate_identifier(identifier)
    return f"[{identifier}]"


def quote_catalog_identifier(identifier: str) -> str:
    """
    Bracket-quote a name read from the catalog, escaping ``]`` as ``]]``.

    Example:
        >>> quote_catalog_identifier("Order Details")
        '[Order Details]'
        >>> quote_catalog_identifier("odd]name")
        '[odd]]name]'

    Raises:
        ValueError: If the name is empty, longer than 128 characters or
            contains a NUL character
    """
    if not identifier:
        raise ValueError("SQL identifier cannot be empty")
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"SQL identifier longer than {MAX_IDENTIFIER_LENGTH} characters: {identifier[:32]!r}..."
        )
    if "\x00" in identifier:
        raise ValueError(f"SQL identifier contains a NUL character: {identifier!r}")
    return "[" + identifier.replace("]", "]]") + "]"


def split_qualified_name(qualified_name: str, default_schema: str = "dbo") -> tuple[str, str]:
    """
    Split ``schema.table`` into its parts; a bare name gets ``default_schema``.

    Raises:
        ValueError: If either part is invalid or there are more than two parts
    """
    if not qualified_name:
        raise ValueError("Qualified table name cannot be empty")

    parts = qualified_name.split(".")
    if len(parts) == 1:
        parts = [default_schema, parts[0]]
    elif len(parts) != 2:
        raise ValueError(
            f"Invalid table name: {qualified_name!r}. Expected schema.table."
        )

    schema, table = parts
    validate_identifier(schema)
    validate_identifier(table)
    return schema, table


def quote_qualified_name(qualified_name: str, default_schema: str = "dbo") -> str:
    """Validate and quote ``schema.table``: ``etl.Staging`` -> ``[etl].[Staging]``."""
    schema, table = split_qualified_name(qualified_name, default_schema)
    return f"[{schema}].[{table}]"


def validate_version(value: int, param_name: str) -> None:
    """
    Validate a change tracking version before binding it.

    Raises:
        ValueError: If the value is not a non-negative integer
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Invalid {param_name}: {value!r}. Must be an integer.")

    if value < 0:
        raise ValueError(f"Invalid {param_name}: {value}. Must be >= 0.")
