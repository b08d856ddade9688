"""Agent workflow runner: sequences external agent CLIs from a YAML workflow."""

__version__ = "0.3.0"
