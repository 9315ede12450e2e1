from __future__ import annotations

import math
from collections.abc import Mapping, Sequence, Set
from datetime import datetime
from decimal import Decimal
from typing import Any


def values_equal(left: Any, right: Any) -> bool:
    """Igualdad estructural entre valores de los dos stores.

    - Escalares por valor (``1 == 1.0``), pero ``bool`` nunca iguala a números.
    - Mapeos: mismas claves y valores iguales, sin importar el orden de inserción.
    - Secuencias (list/tuple): misma longitud y orden.
    - Conjuntos: sin orden, emparejando elementos con esta misma regla.
    - ``NaN`` es igual a ``NaN`` (ambos stores "no tienen número").

    Texto y bytes se tratan como escalares, nunca como secuencias.
    """
    if left is right:
        return True
    if left is None or right is None:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return _numbers_equal(left, right)
    if isinstance(left, (str, bytes)) or isinstance(right, (str, bytes)):
        return type(left) is type(right) and left == right
    if isinstance(left, datetime) and isinstance(right, datetime):
        return _datetimes_equal(left, right)
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        return _mappings_equal(left, right)
    if isinstance(left, Set) and isinstance(right, Set):
        return _unordered_equal(list(left), list(right))
    if _is_sequence(left) and _is_sequence(right):
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right


def diff_fields(primary: Mapping[str, Any], secondary: Mapping[str, Any]) -> list[str]:
    """Campos (unión de ambos lados) cuyo valor no es estructuralmente igual.

    Un campo ausente equivale a ``None``: los stores que no guardan nulos (nodos
    de FalkorDB, celdas vacías de Sheets) borran la propiedad en vez de anularla.
    """
    ordered = list(primary.keys())
    ordered.extend(name for name in secondary.keys() if name not in primary)
    return [name for name in ordered if not values_equal(primary.get(name), secondary.get(name))]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal))


def _numbers_equal(left: Any, right: Any) -> bool:
    left_nan = isinstance(left, float) and math.isnan(left)
    right_nan = isinstance(right, float) and math.isnan(right)
    if left_nan or right_nan:
        return left_nan and right_nan
    if isinstance(left, Decimal) != isinstance(right, Decimal):
        return Decimal(str(left)) == Decimal(str(right))
    return left == right


def _datetimes_equal(left: datetime, right: datetime) -> bool:
    if (left.tzinfo is None) != (right.tzinfo is None):
        return False
    return left == right


def _mappings_equal(left: Mapping[Any, Any], right: Mapping[Any, Any]) -> bool:
    if set(left.keys()) != set(right.keys()):
        return False
    return all(values_equal(left[key], right[key]) for key in left)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _unordered_equal(left: list[Any], right: list[Any]) -> bool:
    if len(left) != len(right):
        return False
    remaining = list(right)
    for item in left:
        for index, candidate in enumerate(remaining):
            if values_equal(item, candidate):
                del remaining[index]
                break
        else:
            return False
    return True
