"""Entry point for ``python -m chronicbot_updater``."""

from chronicbot_updater.cli import run

if __name__ == "__main__":
    run()
