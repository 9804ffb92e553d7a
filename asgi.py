"""
asgi.py -- Application assembly for authcore.

Deployments that plug in a real OTP transport do it here, before the server
starts, by setting app.state.otp_sender to a callable (identifier, IssuedOtp).
The lifespan only installs the log-only default when nothing was set.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
