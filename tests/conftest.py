import numpy as np
import pytest

from threadart_engine import GeneratorConfig
from threadart_store import KeyValueStore


@pytest.fixture
def noise_image():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(40, 60, 3), dtype=np.uint8)


@pytest.fixture
def black_image():
    return np.zeros((32, 32), dtype=np.uint8)


@pytest.fixture
def white_image():
    return np.full((32, 32), 255, dtype=np.uint8)


@pytest.fixture
def small_config():
    return GeneratorConfig(solve_size=32, pins=24, threads=60, thickness=1, key_every=7)


@pytest.fixture
def store(tmp_path):
    return KeyValueStore(tmp_path / "storage.json")
