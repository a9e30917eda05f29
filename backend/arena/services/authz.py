from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from arena.errors import AccessDenied, Unauthenticated

_TOKEN_SALT = 'arena-socket-token'


@dataclass(frozen=True)
class Principal:
    identity: str
    roles: FrozenSet[str]


class SignedTokenVerifier:
    """Resolves socket tokens to a principal.

    Tokens only carry the identity; roles are read from the user record on
    every call so a role change takes effect on the next message.
    """

    def __init__(self, secret_key, store, max_age=3600):
        self._serializer = URLSafeTimedSerializer(secret_key, salt=_TOKEN_SALT)
        self.store = store
        self.max_age = max_age

    def issue(self, identity: str) -> str:
        return self._serializer.dumps({'sub': identity})

    def verify(self, token) -> Optional[Principal]:
        if not token or not isinstance(token, str):
            return None
        try:
            claims = self._serializer.loads(token, max_age=self.max_age)
        except BadSignature:
            # SignatureExpired is a BadSignature too
            return None
        identity = claims.get('sub') if isinstance(claims, dict) else None
        if not identity:
            return None
        user = self.store.find_user(identity)
        if user is None:
            return None
        return Principal(identity=user.email, roles=user.role_set)


class AuthorizationGate:
    def __init__(self, verifier):
        self.verifier = verifier

    def authorize(self, token, required_roles: Iterable[str] = ()) -> Principal:
        """Resolve `token` and require at least one of `required_roles`.

        An empty role list admits any resolvable identity.
        """
        principal = self.verifier.verify(token)
        if principal is None:
            raise Unauthenticated()
        required = set(required_roles or ())
        if required and not required & principal.roles:
            raise AccessDenied()
        return principal
