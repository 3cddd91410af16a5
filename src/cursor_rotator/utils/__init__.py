# src/cursor_rotator/utils/__init__.py

from .credential_formatter import extract_token, split_credentials

__all__ = ['extract_token', 'split_credentials']
