from __future__ import annotations

import unicodedata
from typing import Optional, Sequence, Tuple, Union

from .errors import Failure, InjectionRejected, SizeExceeded, echo
from .limits import LengthClass

# Leading characters removed before the dash check.
DEFAULT_STRIP_CHARS = " \t\n\r\v\f"

# Unicode categories treated as invisible padding: controls, format chars
# (zero-width space, BOM, ...) and space separators (NBSP, ...).
_INVISIBLE_CATEGORIES = frozenset({"Cc", "Cf", "Zs"})

_TOKEN = object()


class ValidatedArgument(str):
    """A string that passed injection and length checks.

    Only ArgumentValidator (and ``literal`` for adapter-authored constants)
    can build one. The content is identical to the input.
    """

    def __new__(cls, value: str, field: Optional[str], _token: object = None) -> "ValidatedArgument":
        if _token is not _TOKEN:
            raise TypeError("ValidatedArgument can only be created by ArgumentValidator")
        obj = super().__new__(cls, value)
        obj.field = field
        return obj

    def __setattr__(self, name: str, value: object) -> None:
        if name == "field" and not hasattr(self, "field"):
            super().__setattr__(name, value)
            return
        raise AttributeError("ValidatedArgument is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("ValidatedArgument is immutable")

    def __repr__(self) -> str:
        return f"ValidatedArgument({str.__repr__(self)}, field={self.field!r})"


def literal(value: str) -> ValidatedArgument:
    """Wrap an adapter-authored constant (e.g. ``"--json"``) for use in argv.

    Never call this on caller-supplied input.
    """

    if not isinstance(value, str):
        raise TypeError(f"literal must be a str, got {type(value).__name__}")
    if "\x00" in value:
        raise ValueError("literal must not contain NUL")
    return ValidatedArgument(value, None, _TOKEN)


class ArgumentValidator:
    """Flag-injection and length checks for untrusted argument values."""

    def __init__(self, strip_chars: str = DEFAULT_STRIP_CHARS, *, strip_format_chars: bool = True) -> None:
        self.strip_chars = frozenset(strip_chars)
        self.strip_format_chars = strip_format_chars

    def _is_padding(self, ch: str) -> bool:
        if ch in self.strip_chars:
            return True
        return self.strip_format_chars and unicodedata.category(ch) in _INVISIBLE_CATEGORIES

    def normalize(self, value: str) -> str:
        i = 0
        while i < len(value) and self._is_padding(value[i]):
            i += 1
        return value[i:]

    def is_flag_like(self, value: str) -> bool:
        return self.normalize(value).startswith("-")

    def check_injection(self, value: str, field: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"{field} must be a str, got {type(value).__name__}")
        if self.is_flag_like(value):
            raise InjectionRejected(
                f'Invalid {field}: "{echo(value)}". Values must not start with "-" '
                f"(flag injection).",
                field=field,
                value=value,
            )

    def validate_length(
        self,
        value: Union[str, Sequence[str]],
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> None:
        if isinstance(value, str):
            _check_len(value, field, length_class)
            return
        items = list(value)
        if len(items) > LengthClass.ARRAY_MAX.limit:
            raise SizeExceeded(
                f"{field} exceeds ARRAY_MAX: {len(items)} items > {LengthClass.ARRAY_MAX.limit}",
                field=field,
                length=len(items),
                limit=LengthClass.ARRAY_MAX.limit,
            )
        for i, item in enumerate(items):
            _check_len(item, f"{field}[{i}]", length_class)

    def validate(
        self,
        value: str,
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> ValidatedArgument:
        self.check_injection(value, field)
        self.validate_length(value, field, length_class)
        return ValidatedArgument(value, field, _TOKEN)

    def validate_array(
        self,
        values: Sequence[str],
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> Tuple[ValidatedArgument, ...]:
        if isinstance(values, str):
            raise TypeError(f"{field} must be a sequence of str, not a str")
        items = list(values)
        self.validate_length(items, field, length_class)
        return tuple(self.validate(v, f"{field}[{i}]", length_class) for i, v in enumerate(items))

    def check(
        self,
        value: str,
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> Union[ValidatedArgument, Failure]:
        """Like validate(), but a rejection comes back as a Failure record."""
        try:
            return self.validate(value, field, length_class)
        except (InjectionRejected, SizeExceeded) as e:
            return e.failure()


def _check_len(value: str, field: str, length_class: LengthClass) -> None:
    if not isinstance(value, str):
        raise TypeError(f"{field} must be a str, got {type(value).__name__}")
    limit = length_class.limit
    if len(value) > limit:
        raise SizeExceeded(
            f"{field} exceeds {length_class.name}: {len(value)} characters > {limit}",
            field=field,
            length=len(value),
            limit=limit,
        )


DEFAULT_VALIDATOR = ArgumentValidator()


def validate(value: str, field: str, length_class: LengthClass = LengthClass.STRING_MAX) -> ValidatedArgument:
    return DEFAULT_VALIDATOR.validate(value, field, length_class)


def validate_length(
    value: Union[str, Sequence[str]],
    field: str,
    length_class: LengthClass = LengthClass.STRING_MAX,
) -> None:
    DEFAULT_VALIDATOR.validate_length(value, field, length_class)


def validate_array(
    values: Sequence[str],
    field: str,
    length_class: LengthClass = LengthClass.STRING_MAX,
) -> Tuple[ValidatedArgument, ...]:
    return DEFAULT_VALIDATOR.validate_array(values, field, length_class)


def check(value: str, field: str, length_class: LengthClass = LengthClass.STRING_MAX) -> Union[ValidatedArgument, Failure]:
    return DEFAULT_VALIDATOR.check(value, field, length_class)
