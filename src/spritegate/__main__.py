"""SpriteGate command-line entry point (``python -m spritegate``)."""

from spritegate.cli import main

if __name__ == "__main__":
    main()
