#!/usr/bin/env python3
"""CLI entry point for the citekey-resolve command.

Looks up citation keys in Zotero and adds them to a bibliography file.
"""

import sys


def main() -> None:
    """Entry point for citekey-resolve command."""
    from citekey_resolver.resolver import main as resolver_main

    sys.exit(resolver_main())


if __name__ == "__main__":
    main()
