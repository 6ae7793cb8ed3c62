"""Monthly payroll generation, statutory deductions and approval lifecycle."""

__version__ = "0.1.0"
