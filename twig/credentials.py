from dataclasses import dataclass, field
from typing import Protocol, TypeAlias


@dataclass(frozen=True)
class NoAuth:
    pass


@dataclass(frozen=True)
class UsernamePassword:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Token:
    token: str = field(repr=False)
    username: str | None = None


@dataclass(frozen=True)
class SshKey:
    key_path: str
    username: str = 'git'
    passphrase: str | None = field(default=None, repr=False)


Credentials: TypeAlias = NoAuth | UsernamePassword | Token | SshKey

NO_AUTH = NoAuth()


class CredentialProvider(Protocol):
    def resolve(self) -> Credentials | dict[str, str] | None:
        ...


def resolve_credentials(credentials: Credentials | CredentialProvider | dict[str, str] | None) -> Credentials:
    """Normalise ``None``, a credentials value or a provider into a credentials value."""
    if credentials is None:
        return NO_AUTH
    if isinstance(credentials, (NoAuth, UsernamePassword, Token, SshKey)):
        return credentials
    if isinstance(credentials, dict):
        # providers may hand back a plain {username, secret} mapping
        return UsernamePassword(credentials['username'], credentials['secret'])
    if hasattr(credentials, 'resolve'):
        return resolve_credentials(credentials.resolve())
    raise TypeError(f'unsupported credentials {type(credentials).__name__}')
