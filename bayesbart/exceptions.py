"""Custom exceptions for bayesbart.

This module defines exceptions used by bayesbart to signal errors
in tree operations, abstract method implementations and invalid inputs.
"""

class InvalidTreeError(Exception):
    """Exception raised for errors in the tree structure or data."""
    pass

class AbstractMethodError(Exception):
    """Exception raised when an abstract method has not been implemented."""
    pass

class InvalidDataError(ValueError):
    """Exception raised when the data given to a model are inconsistent."""
    pass
