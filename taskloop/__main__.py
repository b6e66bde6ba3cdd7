"""Allow running taskloop as a module: python -m taskloop."""

from taskloop.cli import main

if __name__ == "__main__":
    main()
