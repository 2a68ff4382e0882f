from paygate.oauth.token_cache import (
    ClientCredentials,
    OAuthTokenCache,
    TokenGrant,
    TokenStyle,
    exchange_client_credentials,
)

__all__ = [
    "ClientCredentials",
    "OAuthTokenCache",
    "TokenGrant",
    "TokenStyle",
    "exchange_client_credentials",
]
