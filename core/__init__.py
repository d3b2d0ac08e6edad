"""
Core utilities package.

This package MUST NOT:
- import trading, prediction or learning code
- hold runtime state

It is safe for:
- logging
- config
- exceptions
- dependency checks
"""
