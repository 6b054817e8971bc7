"""
Authorization URL signing and QR rendering for guest device authorization.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import io
from typing import Optional

import qrcode
from qrcode.image.pure import PyPNGImage


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def device_auth_token(email: str, user_code: str, secret: str) -> str:
    """
    `<b64url(email)>.<b64url(hmac_sha256(secret, "email:user_code"))>`

    Lets the wallet's web flow skip code and email entry for this buyer.
    """
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{email}:{user_code}".encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return f"{_b64url(email.encode('utf-8'))}.{_b64url(signature)}"


def build_authorization_url(
    verification_uri: str,
    user_code: str,
    verification_uri_complete: Optional[str] = None,
    buyer_email: Optional[str] = None,
    secret: str = "",
) -> str:
    url = verification_uri_complete or verification_uri
    if secret and buyer_email and user_code:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}t={device_auth_token(buyer_email, user_code, secret)}"
    return url


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image(image_factory=PyPNGImage).save(buf)
    return buf.getvalue()
