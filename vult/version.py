"""Vult Meta information.
   Vult is a local, PIN-protected vault for API keys and tokens.
"""
__title__ = 'vult'
__description__ = (
   'Vult is a local, PIN-protected vault for API keys and tokens, '
   'with a per-secret encryption key for every stored value.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2025 Vult Authors'
__author__ = 'Vult Authors'
__license__ = 'Apache-2.0'
