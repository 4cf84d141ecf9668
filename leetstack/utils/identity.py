import os
import hashlib
import hmac
from typing import Dict, Optional

from leetstack.utils.errors import Unauthorized
from leetstack.utils.logger import get_logger

LOG = get_logger()

API_KEY_HASHES = os.getenv('API_KEY_HASHES', '')


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode('utf-8')).hexdigest()


def _parse_key_table(value: str) -> Dict[str, str]:
    table: Dict[str, str] = {}
    for entry in value.split(','):
        entry = entry.strip()
        if not entry or ':' not in entry:
            continue
        digest, owner = entry.split(':', 1)
        if digest.strip() and owner.strip():
            table[digest.strip().lower()] = owner.strip()
    return table


class ApiKeyIdentityProvider:
    """Resolves the owner behind a bearer API key.

    Only SHA-256 digests of keys are configured; lookups compare digests in
    constant time.
    """

    _instance = None

    def __init__(self, key_hashes: Optional[Dict[str, str]] = None):
        self._owners = key_hashes if key_hashes is not None else _parse_key_table(API_KEY_HASHES)
        if not self._owners:
            LOG.warning('no API keys configured; every request will be rejected')

    @classmethod
    def get_instance(cls) -> 'ApiKeyIdentityProvider':
        if cls._instance is None:
            cls._instance = ApiKeyIdentityProvider()
        return cls._instance

    def register(self, raw_key: str, owner_id: str):
        self._owners[hash_api_key(raw_key)] = owner_id

    def verify(self, authorization: Optional[str]) -> str:
        if not authorization:
            raise Unauthorized('Missing Authorization header')
        scheme, _, token = authorization.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            raise Unauthorized('Authorization header must be a Bearer token')
        digest = hash_api_key(token.strip())
        for known, owner in self._owners.items():
            if hmac.compare_digest(known, digest):
                return owner
        raise Unauthorized('Invalid API key')
