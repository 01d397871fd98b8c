"""
This file makes the 'schemas' directory a Python package and exposes key schemas
for easier importing.
"""
from .drive import (
    AuthUrlResponse, ConnectionStatus, DisconnectResponse,
    PermissionCheckRequest, PermissionCheckResponse,
    SecureUrlRequest, SecureUrlResponse,
    TokenStats, CleanupResponse, ThumbnailInvalidateResponse, AuditRecordRead, ErrorResponse,
)
