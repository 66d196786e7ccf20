"""
Test configuration and fixtures for edvanity.
"""

import sys
from pathlib import Path

import pytest

# Add src/ to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives import serialization

import edvanity


def keypair_from_seed(seed):
    """Deterministic KeyPair for encoding tests"""
    private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
    public = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return edvanity.KeyPair(public_key=public, private_key=seed + public)


@pytest.fixture
def keypair():
    return keypair_from_seed(bytes(range(32)))


@pytest.fixture
def other_keypair():
    return keypair_from_seed(bytes(range(100, 132)))
