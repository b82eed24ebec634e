import os
import sys

import pytest

# Flat layout: make the top-level modules importable the same way the CLI sees them
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from datavault import DataVault  # noqa: E402
from keys import generate_rsa  # noqa: E402


@pytest.fixture(scope="session")
def alice_keys():
    return generate_rsa()


@pytest.fixture(scope="session")
def bob_keys():
    return generate_rsa()


@pytest.fixture(scope="session")
def mallory_keys():
    return generate_rsa()


@pytest.fixture
def vault(tmp_path):
    v = DataVault(str(tmp_path / "vault.sqlite"))
    v.init_db()
    return v
