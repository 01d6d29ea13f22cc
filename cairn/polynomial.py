"""Polynomial arithmetic over GF(2).

Polynomials are plain Python integers: bit ``i`` is the coefficient of
``x^i``. Addition is XOR, multiplication is carry-less. The chunker uses a
random irreducible polynomial of degree 53 per repository, found by drawing
candidates and running the Ben-Or irreducibility test on each.
"""

from __future__ import annotations

import os
from typing import Callable, Tuple

from .constants import POLYNOMIAL_DEGREE, POLYNOMIAL_MAX_TRIES
from .errors import PolynomialGenerationExhausted


def pol_deg(p: int) -> int:
    """Degree of ``p``; the zero polynomial has degree -1."""
    return p.bit_length() - 1


def pol_mul(a: int, b: int) -> int:
    res = 0
    while b:
        if b & 1:
            res ^= a
        a <<= 1
        b >>= 1
    return res


def pol_divmod(x: int, d: int) -> Tuple[int, int]:
    if d == 0:
        raise ZeroDivisionError("division by the zero polynomial")
    dd = pol_deg(d)
    q = 0
    while x and pol_deg(x) >= dd:
        shift = pol_deg(x) - dd
        q |= 1 << shift
        x ^= d << shift
    return q, x


def pol_mod(x: int, d: int) -> int:
    return pol_divmod(x, d)[1]


def pol_gcd(a: int, b: int) -> int:
    while b:
        a, b = b, pol_mod(a, b)
    return a


def pol_mulmod(a: int, b: int, m: int) -> int:
    """Compute ``a * b mod m`` reducing as we go so operands stay small."""
    if m == 0:
        raise ZeroDivisionError("modulus is the zero polynomial")
    dm = pol_deg(m)
    a = pol_mod(a, m)
    res = 0
    while b:
        if b & 1:
            res ^= a
        a <<= 1
        if pol_deg(a) == dm:
            a ^= m
        b >>= 1
    return res


def _qp(p: int, g: int) -> int:
    # x^(2^p) - x mod g
    res = 2
    for _ in range(p):
        res = pol_mulmod(res, res, g)
    return pol_mod(res ^ 2, g)


def is_irreducible(f: int) -> bool:
    """Ben-Or test: ``f`` is irreducible iff gcd(x^(2^i) - x, f) == 1 for i <= deg/2."""
    deg = pol_deg(f)
    if deg < 1:
        return False
    for i in range(1, deg // 2 + 1):
        if pol_gcd(f, _qp(i, f)) != 1:
            return False
    return True


def random_polynomial(
    max_tries: int = POLYNOMIAL_MAX_TRIES,
    randbytes: Callable[[int], bytes] = os.urandom,
) -> int:
    """Draw random degree-53 candidates until one is irreducible.

    Raises PolynomialGenerationExhausted when ``max_tries`` candidates were
    all reducible.
    """
    for _ in range(max_tries):
        f = int.from_bytes(randbytes(8), "little")
        # keep bits 0..53, then pin degree 53 and a non-zero constant term
        f &= (1 << (POLYNOMIAL_DEGREE + 1)) - 1
        f |= (1 << POLYNOMIAL_DEGREE) | 1
        if is_irreducible(f):
            return f
    raise PolynomialGenerationExhausted(
        f"unable to find an irreducible polynomial in {max_tries} attempts"
    )


def format_polynomial(p: int) -> str:
    return f"{p:x}"


def parse_polynomial(text: str) -> int:
    return int(text, 16)
