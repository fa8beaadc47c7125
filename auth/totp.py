"""
auth/totp.py -- TOTP secrets, codes, provisioning URIs and QR images.

RFC 6238 via cryptography's twofactor.totp: HMAC-SHA1 over a 30-second
counter, dynamic truncation, 6 digits. validate_totp() accepts the previous,
current and next step to tolerate clock drift between server and phone.

Validation never raises. An empty secret, an empty code or a secret that is
not valid Base32 is simply "not a match" -- the caller turns that into the
same 4001 as a wrong code.

QR codes are rendered with qrcode + Pillow at error-correction level Q, large
enough to scan from a laptop screen.
"""

from __future__ import annotations

import base64
import binascii
import io
import secrets
import time
from datetime import datetime
from urllib.parse import quote

import qrcode
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor import InvalidToken
from cryptography.hazmat.primitives.twofactor.totp import TOTP
from qrcode.constants import ERROR_CORRECT_Q

_SECRET_BYTES = 20
_DIGITS = 6
# Checked in this order: current step first, then the neighbours.
_DRIFT_STEPS = (0, -1, 1)


def decode_secret(secret: str) -> bytes:
    """Base32 secret (padding optional, any case) -> raw key bytes. Raises binascii.Error."""
    cleaned = secret.replace(" ", "").upper()
    return base64.b32decode(cleaned + "=" * (-len(cleaned) % 8))


class TwoFactorEngine:
    def __init__(self, issuer: str = "Portfolio", step_seconds: int = 30) -> None:
        self.issuer = issuer
        self.step_seconds = step_seconds

    def generate_secret(self) -> str:
        """20 random bytes, Base32 (RFC 4648), uppercase, padding stripped -> 32 chars."""
        raw = secrets.token_bytes(_SECRET_BYTES)
        return base64.b32encode(raw).decode("ascii").rstrip("=")

    def generate_totp(self, secret: str, for_time: datetime | float | None = None) -> str:
        """Return the 6-digit code for `for_time` (default: now)."""
        return self._totp(secret).generate(_timestamp(for_time)).decode("ascii")

    def validate_totp(self, secret: str | None, code: str | None, for_time: datetime | float | None = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        if len(code) != _DIGITS or not (code.isascii() and code.isdigit()):
            return False
        try:
            totp = self._totp(secret)
        except (binascii.Error, ValueError, TypeError):
            return False
        moment = _timestamp(for_time)
        for offset in _DRIFT_STEPS:
            at = moment + offset * self.step_seconds
            if at < 0:
                continue
            try:
                totp.verify(code.encode("ascii"), at)
            except InvalidToken:
                continue
            return True
        return False

    def provisioning_uri(self, email: str, secret: str, issuer: str | None = None) -> str:
        """Build the otpauth:// URI authenticator apps import from a QR code.

        The label keeps the exact `{issuer}:{email}` form with both parts
        percent-encoded.
        """
        issuer = issuer or self.issuer
        label_issuer = quote(issuer, safe="")
        return (
            f"otpauth://totp/{label_issuer}:{quote(email, safe='')}"
            f"?secret={secret}&issuer={label_issuer}"
        )

    def render_qr_image(self, uri: str) -> bytes:
        """Rasterize `uri` as a PNG QR code and return the raw bytes."""
        qr = qrcode.QRCode(error_correction=ERROR_CORRECT_Q, box_size=10, border=4)
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image()
        buf = io.BytesIO()
        img.save(buf, "PNG")
        return buf.getvalue()

    def render_qr_data_uri(self, uri: str) -> str:
        png = self.render_qr_image(uri)
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")

    @staticmethod
    def format_for_display(secret: str) -> str:
        """Group the secret in blocks of four for manual entry: 'ABCD EFGH IJ'."""
        return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))

    def _totp(self, secret: str) -> TOTP:
        # Operator-supplied secrets may be shorter than the 128-bit minimum.
        return TOTP(decode_secret(secret), _DIGITS, SHA1(), self.step_seconds, enforce_key_length=False)


def _timestamp(for_time: datetime | float | None) -> float:
    if for_time is None:
        return time.time()
    if isinstance(for_time, datetime):
        return for_time.timestamp()
    return float(for_time)
