"""
test_pkce.py
------------
ClaimBridge — Tests for pkce.py
-------------------------------
RFC 7636 S256 verifier/challenge generation.

Run:
    pytest tests/test_pkce.py -v --tb=short

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

import base64
import hashlib
import os
import re
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pkce import CHALLENGE_METHOD, challenge_for, generate_pkce

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


def test_verifier_is_43_url_safe_chars_without_padding():
    codes = generate_pkce()
    assert len(codes.code_verifier) == 43
    assert URL_SAFE.match(codes.code_verifier)
    assert "=" not in codes.code_challenge


def test_challenge_is_sha256_of_verifier():
    codes = generate_pkce()
    digest = hashlib.sha256(codes.code_verifier.encode()).digest()
    expected = base64.urlsafe_b64encode(digest).decode().rstrip("=")
    assert codes.code_challenge == expected


def test_rfc7636_appendix_b_vector():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_each_pair_is_fresh():
    assert generate_pkce().code_verifier != generate_pkce().code_verifier


def test_method_is_s256():
    assert CHALLENGE_METHOD == "S256"
