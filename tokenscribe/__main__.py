"""Package entry point for ``python -m tokenscribe``.

HOW: Delegates to the CLI's main() function.
"""

from tokenscribe.cli import main

if __name__ == "__main__":
    main()
