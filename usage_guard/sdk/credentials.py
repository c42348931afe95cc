"""
Credential providers.

Supply the bearer token for one refresh cycle. An absent token is a
normal state, reported as ``None``.
"""

import os
from typing import Mapping, Optional, Sequence

DEFAULT_TOKEN_VARIABLES = ("GITHUB_TOKEN", "GH_TOKEN")


class EnvCredentialProvider:
    """Reads the token from the first non-empty environment variable."""

    def __init__(
        self,
        variables: Sequence[str] = DEFAULT_TOKEN_VARIABLES,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.variables = tuple(variables)
        self._environ = environ

    def read(self) -> Optional[str]:
        environ = os.environ if self._environ is None else self._environ
        for name in self.variables:
            token = (environ.get(name) or "").strip()
            if token:
                return token
        return None


class StaticCredentialProvider:
    """Returns a fixed token (e.g. from a ``--token`` option)."""

    def __init__(self, token: Optional[str]):
        self._token = (token or "").strip() or None

    def read(self) -> Optional[str]:
        return self._token
