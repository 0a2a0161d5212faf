import os

import pytest

os.environ.setdefault('MONGO_URL', 'mongodb://localhost:27017')
os.environ.setdefault('DB_NAME', 'honoraires_test')

from synthetic import generate_synthetic  # noqa: E402
from fakes import InMemoryStore  # noqa: E402


@pytest.fixture
def dataset():
    """Synthetic cabinet with known discrepancies"""
    return generate_synthetic('Demo Cabinet')


@pytest.fixture
def store(dataset):
    return InMemoryStore.from_dataset(dataset)
