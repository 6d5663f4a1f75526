from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import InvalidToken

from .services import TokenDenylist


class DenylistJWTAuthentication(JWTAuthentication):
    """JWT authentication that rejects access tokens revoked at logout"""

    def get_validated_token(self, raw_token):
        if TokenDenylist.is_revoked(raw_token):
            raise InvalidToken({
                'detail': 'Token has been revoked',
                'code': 'token_revoked',
            })
        return super().get_validated_token(raw_token)
