"""
Enrollment administration back-office: models, Sage importer and utilities.
"""

__version__ = "0.1.0"
