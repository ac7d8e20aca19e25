"""Conversion of snake_case column names to CamelCase identifiers."""


def allowed_bind_char(char: str) -> bool:
    """Tell whether ``char`` is a single ASCII letter or digit."""
    return len(char) == 1 and char.isascii() and char.isalnum()


def camelize(name: str) -> str:
    """Turn a snake_case name into CamelCase.

    Raises ValueError if the name holds anything other than ASCII letters,
    digits and underscores.
    """
    out: list[str] = []
    underscore_seen = False
    for i, char in enumerate(name):
        if not (allowed_bind_char(char) or char == "_"):
            raise ValueError(f"not allowed name {name}")
        if char == "_":
            underscore_seen = True
            continue
        if (i == 0 or underscore_seen) and char.islower():
            char = char.upper()
            underscore_seen = False
        out.append(char)
    return "".join(out)