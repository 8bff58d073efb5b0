import pytest

from .helpers import make_engine


@pytest.fixture
def engine():
    return make_engine(3)
