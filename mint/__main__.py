"""Allow "python -m mint"."""

from .cli import main

if __name__ == "__main__":
    main()
