"""
API Module - REST and Server-Sent Events surface for a UI
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
