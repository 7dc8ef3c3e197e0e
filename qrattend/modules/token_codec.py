"""
Token Codec Module - QR Attendance Gate

This module mints and verifies the signed, short-lived tokens that a
teacher's screen displays as a QR code. A token asserts only that a class
session was open when it was issued; the scanning student's identity comes
from their own authenticated request.

Features:
- HS256-signed session claims (session, configuration, owner, nonce)
- Pinned issuer and audience
- Fixed time-to-live checked against an injectable clock
- Opaque failure reporting (one message for every verification failure)
- QR code image rendering for display
"""

import base64
import io
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import jwt
import qrcode


@dataclass
class SessionClaim:
    """Decoded contents of a session token."""
    session_id: str
    configuration_id: int
    owner_id: int
    issued_at: datetime
    expires_at: datetime
    nonce: str


@dataclass
class TokenVerification:
    """Result of verifying a token. ``reason`` is for audit logs only."""
    valid: bool
    claim: Optional[SessionClaim] = None
    reason: Optional[str] = None


def new_session_id() -> str:
    return uuid.uuid4().hex


class TokenCodec:
    """
    Issues and verifies signed session tokens.
    """

    ALGORITHM = 'HS256'
    REQUIRED_CLAIMS = ['sid', 'cid', 'oid', 'iat', 'exp', 'jti', 'iss', 'aud']

    def __init__(self, secret: str, clock, ttl_seconds: int = 90,
                 issuer: str = 'qrattend', audience: str = 'student-app'):
        """
        Initialize the codec.

        Args:
            secret (str): Server-held signing secret
            clock: Object with a ``now()`` method returning aware UTC datetimes
            ttl_seconds (int): Token lifetime
            issuer (str): Issuer tag written into and required from tokens
            audience (str): Audience tag written into and required from tokens
        """
        if not secret:
            raise ValueError("A signing secret is required")
        self.secret = secret
        self.clock = clock
        self.ttl_seconds = int(ttl_seconds)
        self.issuer = issuer
        self.audience = audience
        self.logger = logging.getLogger(__name__)

        self.qr_settings = {
            'version': 1,
            'error_correction': qrcode.constants.ERROR_CORRECT_M,
            'box_size': 10,
            'border': 4,
            'fill_color': 'black',
            'back_color': 'white'
        }

    def issue(self, session_id: str, configuration_id: int, owner_id: int,
              issued_at: Optional[datetime] = None) -> str:
        """
        Create a signed token for a session.

        Args:
            session_id (str): Freshly generated session ID
            configuration_id (int): Owning class configuration
            owner_id (int): Teacher who opened the session
            issued_at (datetime): Issuance time, defaults to the clock's now

        Returns:
            str: Encoded token
        """
        issued_at = issued_at or self.clock.now()
        iat = int(issued_at.timestamp())
        payload = {
            'sid': session_id,
            'cid': int(configuration_id),
            'oid': int(owner_id),
            'iat': iat,
            'exp': iat + self.ttl_seconds,
            'jti': secrets.token_hex(16),
            'iss': self.issuer,
            'aud': self.audience
        }
        return jwt.encode(payload, self.secret, algorithm=self.ALGORITHM)

    def verify(self, token: str) -> TokenVerification:
        """
        Verify signature, issuer, audience and expiry of a token.

        Expiry is evaluated against this codec's clock rather than the
        library's, so that every component shares one notion of "now".
        """
        if not token or not isinstance(token, str):
            return TokenVerification(valid=False, reason='missing_token')

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    'require': self.REQUIRED_CLAIMS,
                    'verify_exp': False,
                    'verify_iat': False,
                    'verify_nbf': False
                }
            )
        except jwt.InvalidSignatureError:
            return TokenVerification(valid=False, reason='signature_mismatch')
        except (jwt.InvalidAudienceError, jwt.InvalidIssuerError):
            return TokenVerification(valid=False, reason='foreign_token')
        except jwt.MissingRequiredClaimError:
            return TokenVerification(valid=False, reason='missing_claim')
        except jwt.InvalidTokenError:
            return TokenVerification(valid=False, reason='malformed_token')

        try:
            issued_at = datetime.fromtimestamp(int(payload['iat']), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload['exp']), tz=timezone.utc)
            claim = SessionClaim(
                session_id=str(payload['sid']),
                configuration_id=int(payload['cid']),
                owner_id=int(payload['oid']),
                issued_at=issued_at,
                expires_at=expires_at,
                nonce=str(payload['jti'])
            )
        except (TypeError, ValueError, OverflowError):
            return TokenVerification(valid=False, reason='malformed_token')

        now = self.clock.now()
        if now >= claim.expires_at:
            return TokenVerification(valid=False, reason='expired')
        if claim.issued_at > now:
            return TokenVerification(valid=False, reason='issued_in_future')

        return TokenVerification(valid=True, claim=claim)

    def render_qr(self, token: str) -> str:
        """
        Render a token as a PNG QR code.

        Returns:
            str: Base64 encoded PNG image
        """
        qr = qrcode.QRCode(
            version=self.qr_settings['version'],
            error_correction=self.qr_settings['error_correction'],
            box_size=self.qr_settings['box_size'],
            border=self.qr_settings['border']
        )
        qr.add_data(token)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=self.qr_settings['fill_color'],
            back_color=self.qr_settings['back_color']
        )

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return base64.b64encode(buffer.getvalue()).decode('utf-8')
