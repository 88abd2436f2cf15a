"""certkeeper - unattended TLS certificate renewal daemon."""

__version__ = "0.1.0"
