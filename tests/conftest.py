import os
import sys

import pytest

# Ensure tests run with the project root on sys.path so tests can import project packages
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


def geometric_tokens(n=400, decades=4):
    """Log-uniform values over ``decades`` orders of magnitude; leading digits follow Benford."""
    return [f"{10 ** (decades * i / n):.2f}" for i in range(n)]


def uniform_digit_tokens(repeat=5):
    """Every leading digit equally often across 1..9000."""
    return [str(d * 10 ** k) for d in range(1, 10) for k in range(4)] * repeat


@pytest.fixture
def benford_tokens():
    return geometric_tokens()


@pytest.fixture
def uniform_tokens():
    return uniform_digit_tokens()

