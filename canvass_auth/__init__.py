"""Stateless e-mail OTP login service for the canvassing app."""

__version__ = "0.1.0"
