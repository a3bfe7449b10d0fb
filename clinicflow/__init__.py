"""ClinicFlow: storage and execution of clinic automation flows."""

__version__ = "1.0.0"
