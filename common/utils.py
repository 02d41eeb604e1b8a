import datetime
import decimal
import secrets
import string
import uuid
from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone
from rest_framework.exceptions import ValidationError

MONEY_QUANT = Decimal("0.01")
BASE36_ALPHABET = string.digits + string.ascii_uppercase


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def generate_document_number(kind, prefix=None, suffix_length=6, now=None):
    """Build numbers like ``DT01-INV-20240315-K3Z9QA`` or ``REF-20240315-0ZX1B2``.

    The random suffix makes collisions unlikely, not impossible; see
    ``generate_unique_document_number``.
    """
    now = now or timezone.localtime()
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(suffix_length))
    parts = [prefix, kind, now.strftime("%Y%m%d"), suffix]
    return "-".join(part for part in parts if part)


def generate_unique_document_number(model, field, kind, prefix=None, attempts=5):
    number = generate_document_number(kind, prefix=prefix)
    for _ in range(attempts - 1):
        if not model.objects.filter(**{field: number}).exists():
            break
        number = generate_document_number(kind, prefix=prefix)
    # A final collision surfaces as a unique violation (409) on insert.
    return number


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value


def uuid_query_param(params, name):
    value = params.get(name)
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError({name: "Must be a valid UUID."})
