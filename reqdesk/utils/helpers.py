"""Shared input helpers for JSON payload validation.

is_choice:   membership test that tolerates lists/dicts from a JSON body
clean_text:  stripped string, or "" for missing and non-string values
is_int:      integer ids, excluding bool
"""


def is_choice(value, allowed) -> bool:
    """True when ``value`` is a string listed in ``allowed``.

    Raw JSON may carry a list or an object where a string is expected;
    those are not hashable and must be rejected before the lookup.
    """
    return isinstance(value, str) and value in allowed


def clean_text(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
