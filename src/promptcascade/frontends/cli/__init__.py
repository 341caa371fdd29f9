"""CLI frontend for promptcascade.

Commands:
    promptcascade run     Execute a cascade over a tree file
    promptcascade tree    Show a tree file's hierarchy

Example:
    $ promptcascade tree tree.yaml
    $ promptcascade run tree.yaml --dry-run
"""

from promptcascade.frontends.cli.main import main

__all__ = ["main"]
