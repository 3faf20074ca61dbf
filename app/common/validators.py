"""
Validators for Brazilian fiscal identifiers and tenant ids
"""
import re
from typing import Optional
from uuid import UUID


UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)


def parse_tenant_id(value) -> Optional[UUID]:
    """
    Return the tenant id as UUID, or None when it is not in canonical
    8-4-4-4-12 form. Braces, urn prefixes and bare hex are rejected.
    """
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str) or not UUID_PATTERN.match(value.strip()):
        return None
    return UUID(value.strip())


def only_digits(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r'\D', '', str(value))


def validate_cnpj(cnpj: str) -> bool:
    """
    Validate a CNPJ.
    - 14 digits after removing punctuation
    - Not all digits equal
    - Both check digits match (weights 5..2,9..2 and 6..2,9..2)
    """
    cleaned = only_digits(cnpj)

    if len(cleaned) != 14:
        return False

    if cleaned == cleaned[0] * 14:
        return False

    def _check_digit(base: str) -> int:
        weights = list(range(len(base) - 7, 1, -1)) + list(range(9, 1, -1))
        total = sum(int(d) * w for d, w in zip(base, weights))
        remainder = total % 11
        return 0 if remainder < 2 else 11 - remainder

    first = _check_digit(cleaned[:12])
    second = _check_digit(cleaned[:12] + str(first))
    return cleaned[-2:] == f"{first}{second}"
