"""Main entry point for the bookshare package."""

from bookshare.exchange.cli import main

if __name__ == "__main__":
    main()
