"""CLI entry point for python -m reelflow"""
from reelflow.cli.commands import app

if __name__ == "__main__":
    app()
