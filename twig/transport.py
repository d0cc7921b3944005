import json
import logging
import os
from abc import ABC, abstractmethod
from urllib.parse import unquote, urlsplit

import httpx

from . import data, remote, types
from .config import Config, DEFAULT_HTTP_TIMEOUT
from .credentials import NoAuth, SshKey, Token, UsernamePassword, resolve_credentials
from .errors import NotFound, TransportFailure

logger = logging.getLogger(__name__)

RECEIVE_PACK_CONTENT_TYPE = 'application/x-twig-receive-pack'


class Transport(ABC):
    """Connection to a remote repository for ref advertisement and pack exchange."""

    @abstractmethod
    def advertise_refs(self) -> remote.Advertisement:
        pass

    @abstractmethod
    def upload_pack(self, wants: list[types.OID], haves: list[types.OID]) -> bytes:
        pass

    @abstractmethod
    def receive_pack(self, commands: list[remote.RefUpdate], pack: bytes, force=False) -> dict[str, str]:
        pass

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class LocalTransport(Transport):
    """A remote repository reachable through the filesystem."""

    def __init__(self, path):
        try:
            self.git_dir, self.root = data.find_git_dir(path)
        except NotFound as e:
            raise TransportFailure(f'{path} does not appear to be a twig repository') from e
        self.store = data.ObjectStore(self.git_dir, Config(self.git_dir).hash_name)
        self.refs = data.References(self.git_dir)

    def advertise_refs(self) -> remote.Advertisement:
        return remote.advertise(self.store, self.refs)

    def upload_pack(self, wants, haves) -> bytes:
        return remote.upload_pack(self.store, wants, haves)

    def receive_pack(self, commands, pack, force=False) -> dict[str, str]:
        checked_out = None
        if self.root is not None:
            head = self.refs.get('HEAD', deref=False)
            checked_out = head.value if head.symbolic else None
        return remote.receive_pack(self.store, self.refs, commands, pack, force, checked_out)


class HttpTransport(Transport):
    """A remote repository served over HTTP(S).

    Endpoints, relative to the remote URL:
    ``GET info/refs``, ``POST upload-pack`` and ``POST receive-pack``.
    """

    def __init__(self, url, credentials=None, timeout=DEFAULT_HTTP_TIMEOUT, transport: httpx.BaseTransport | None = None):
        self.url = url.rstrip('/') + '/'
        credentials = resolve_credentials(credentials)
        headers = {}
        auth = None
        if isinstance(credentials, UsernamePassword):
            auth = httpx.BasicAuth(credentials.username, credentials.password)
        elif isinstance(credentials, Token):
            if credentials.username:
                auth = httpx.BasicAuth(credentials.username, credentials.token)
            else:
                headers['Authorization'] = f'Bearer {credentials.token}'
        elif isinstance(credentials, SshKey):
            raise TransportFailure('ssh key credentials cannot be used with an http remote')
        self.client = httpx.Client(base_url=self.url, headers=headers, auth=auth,
                                   timeout=timeout, transport=transport)
        logger.debug('http transport for %s', self.url)

    def _request(self, method, path, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportFailure(f'{method} {self.url}{path} failed with status {e.response.status_code}') from e
        except httpx.HTTPError as e:
            raise TransportFailure(f'{method} {self.url}{path} failed: {e}') from e
        return response

    def advertise_refs(self) -> remote.Advertisement:
        response = self._request('GET', 'info/refs')
        try:
            body = response.json()
            return remote.Advertisement(dict(body['refs']), body.get('head'), body['hash'])
        except (ValueError, KeyError, TypeError) as e:
            raise TransportFailure(f'malformed ref advertisement from {self.url}') from e

    def upload_pack(self, wants, haves) -> bytes:
        response = self._request('POST', 'upload-pack', json={'wants': list(wants), 'haves': list(haves)})
        return response.content

    def receive_pack(self, commands, pack, force=False) -> dict[str, str]:
        request = {'commands': [list(command) for command in commands], 'force': force}
        body = json.dumps(request).encode() + b'\n' + pack
        response = self._request('POST', 'receive-pack', content=body,
                                 headers={'Content-Type': RECEIVE_PACK_CONTENT_TYPE})
        try:
            return dict(response.json()['statuses'])
        except (ValueError, KeyError, TypeError) as e:
            raise TransportFailure(f'malformed push response from {self.url}') from e

    def close(self):
        self.client.close()


def get_transport(uri, credentials=None, timeout=DEFAULT_HTTP_TIMEOUT) -> Transport:
    uri = os.fspath(uri)
    parts = urlsplit(uri)
    if parts.scheme in ('http', 'https'):
        return HttpTransport(uri, credentials, timeout)
    if not isinstance(resolve_credentials(credentials), NoAuth):
        logger.debug('credentials are not used for local remote %s', uri)
    if parts.scheme == 'file':
        return LocalTransport(unquote(parts.path))
    if parts.scheme == '' or len(parts.scheme) == 1:  # plain path, or a windows drive letter
        return LocalTransport(uri)
    raise TransportFailure(f'unsupported remote {uri}')
