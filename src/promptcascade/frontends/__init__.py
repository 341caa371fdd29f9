"""Frontends - User interfaces for promptcascade.

Submodules:
    cli/    Command-line interface
"""
