"""Allow running the CLI with ``python -m switchyard``."""

from switchyard.cli.cli import main

if __name__ == "__main__":
    main()
