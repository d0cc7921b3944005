import configparser
import io
import logging
import os

from . import data

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = 'master'
DEFAULT_IDENTITY = ('twig', 'twig@localhost')
DEFAULT_HTTP_TIMEOUT = 60.0


def _section(kind, name=None):
    return f'{kind} "{name}"' if name else kind


class Config:
    """Repository configuration kept as an INI file in the metadata directory."""

    def __init__(self, git_dir):
        self.path = os.path.join(git_dir, 'config')
        self._parser = configparser.ConfigParser(interpolation=None)
        self._parser.read(self.path)

    def get(self, kind, key, name=None, fallback=None):
        return self._parser.get(_section(kind, name), key, fallback=fallback)

    def set(self, kind, key, value, name=None):
        section = _section(kind, name)
        if not self._parser.has_section(section):
            self._parser.add_section(section)
        self._parser.set(section, key, str(value))

    def save(self):
        buffer = io.StringIO()
        self._parser.write(buffer)
        data.write_atomic(self.path, buffer.getvalue().encode())
        logger.debug('wrote %s', self.path)

    @property
    def hash_name(self):
        return self.get('core', 'hash', fallback='sha1')

    @property
    def http_timeout(self) -> float:
        return self._parser.getfloat('http', 'timeout', fallback=DEFAULT_HTTP_TIMEOUT)

    def identity(self) -> tuple[str, str]:
        name = os.environ.get('TWIG_AUTHOR_NAME') or self.get('user', 'name', fallback=DEFAULT_IDENTITY[0])
        email = os.environ.get('TWIG_AUTHOR_EMAIL') or self.get('user', 'email', fallback=DEFAULT_IDENTITY[1])
        return name, email

    def remote_url(self, remote):
        return self.get('remote', 'url', name=remote)

    def upstream(self, branch) -> tuple[str, str] | None:
        remote = self.get('branch', 'remote', name=branch)
        merge = self.get('branch', 'merge', name=branch)
        if remote and merge:
            return remote, merge
        return None
