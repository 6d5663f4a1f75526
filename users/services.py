import hashlib
import logging
import time

from django.core.cache import cache
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import RefreshToken

logger = logging.getLogger(__name__)


class TokenDenylist:
    """
    Revoked access tokens, shared between workers through the cache framework.
    Entries expire when the token itself would have expired.
    """
    KEY_PREFIX = 'denylist:'

    @staticmethod
    def key_for(raw_token):
        if isinstance(raw_token, bytes):
            raw_token = raw_token.decode('utf-8')
        digest = hashlib.sha256(raw_token.encode('utf-8')).hexdigest()
        return f"{TokenDenylist.KEY_PREFIX}{digest}"

    @staticmethod
    def revoke(raw_token, expires_at):
        """Deny a token until `expires_at` (a unix timestamp, the token's exp claim)"""
        ttl = int(expires_at - time.time())
        if ttl <= 0:
            return False
        cache.set(TokenDenylist.key_for(raw_token), 1, timeout=ttl)
        return True

    @staticmethod
    def is_revoked(raw_token):
        return cache.get(TokenDenylist.key_for(raw_token)) is not None


class AuthService:
    @staticmethod
    def logout(user, raw_access_token, expires_at, refresh_token=None):
        """
        Revoke the presented access token and blacklist the refresh token.
        `raw_access_token` is the token exactly as sent in the Authorization header.
        """
        revoked = False
        if raw_access_token:
            revoked = TokenDenylist.revoke(raw_access_token, expires_at)

        if refresh_token:
            try:
                RefreshToken(refresh_token).blacklist()
            except TokenError as e:
                logger.warning(f"⚠️ Refresh token for {user.email} not blacklisted: {e}")

        logger.info(f"✅ {user.email} logged out")
        return revoked
