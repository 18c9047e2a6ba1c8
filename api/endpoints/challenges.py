"""
ACME HTTP-01 challenge endpoint.

Serves published key authorizations to the certificate authority. This
route is public and must be reachable on port 80 for every domain the
service issues certificates for.
"""

import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import PlainTextResponse

from core.challenge_publisher import get_challenge_publisher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/.well-known/acme-challenge", tags=["ACME Challenge"])


@router.get(
    "/{token}",
    response_class=PlainTextResponse,
    summary="Serve HTTP-01 Challenge",
    description="""
    Return the key authorization for an ACME HTTP-01 challenge token.

    The response body is the exact key authorization string, served as
    `text/plain`. Unknown tokens and tokens outside the base64url
    alphabet return 404.
    """,
    responses={404: {"description": "Unknown or invalid token"}},
)
async def get_challenge(token: str) -> PlainTextResponse:
    publisher = get_challenge_publisher()
    key_authorization = await publisher.read(token)
    if key_authorization is None:
        logger.debug(f"Challenge token not found: {token!r}")
        raise HTTPException(status_code=404, detail="Challenge not found")
    return PlainTextResponse(key_authorization)
