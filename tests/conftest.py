import pytest
from helpers_repo import write_file

from twig.base import Repository


@pytest.fixture(autouse=True)
def identity(monkeypatch):
    monkeypatch.setenv('TWIG_AUTHOR_NAME', 'Test User')
    monkeypatch.setenv('TWIG_AUTHOR_EMAIL', 'test@example.com')


@pytest.fixture
def repo(tmp_path):
    return Repository.init(tmp_path / 'work')


@pytest.fixture
def bare_origin(tmp_path):
    """A bare repository holding one commit on master, published from a scratch clone."""
    origin = Repository.init(tmp_path / 'origin.twig', bare=True)
    seed = Repository.init(tmp_path / 'seed')
    write_file(seed, 'README', 'hello\n')
    write_file(seed, 'src/main.txt', 'main\n')
    seed.add_all()
    seed.commit('initial')
    seed.add_remote('origin', origin.git_dir)
    seed.push('origin', set_upstream=True)
    return origin
