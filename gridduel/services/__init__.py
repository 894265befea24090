"""
Services package for GridDuel.
"""

from .base import BaseService

__all__ = ['BaseService']
