"""mindshell - command execution and AI-assisted recovery for the terminal."""

__version__ = "0.3.0"
