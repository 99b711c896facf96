"""Browse Azure DevOps boards from the terminal."""

__version__ = "0.1.0"
