import hashlib
import hmac
from typing import Mapping

SIGNATURE_FIELD = "secure_hash"


class PayloadSigner:
    """HMAC-SHA512 подпись платежного payload общим секретом шлюза.

    Подписываются все непустые поля, кроме самой подписи, в виде
    key=value, отсортированные по ключу и склеенные через &.
    """

    def __init__(self, secret: str):
        self._secret = secret.encode()

    @staticmethod
    def canonical(params: Mapping[str, object]) -> str:
        pairs = [
            f"{key}={params[key]}"
            for key in sorted(params)
            if key != SIGNATURE_FIELD and params[key] not in (None, "")
        ]
        return "&".join(pairs)

    def sign(self, params: Mapping[str, object]) -> str:
        return hmac.new(self._secret, self.canonical(params).encode(), hashlib.sha512).hexdigest()

    def verify(self, params: Mapping[str, object]) -> bool:
        received = params.get(SIGNATURE_FIELD)
        if not received or not isinstance(received, str):
            return False
        # compare_digest на str падает на не-ASCII
        return hmac.compare_digest(self.sign(params).encode(), received.lower().encode())

    def signed(self, params: Mapping[str, object]) -> dict:
        payload = {key: value for key, value in params.items() if key != SIGNATURE_FIELD}
        payload[SIGNATURE_FIELD] = self.sign(payload)
        return payload
