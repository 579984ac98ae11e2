"""
Batch code checker for product packaging.

Reads barcodes and batch codes from package photos through an external
vision model and checks each batch code against the format rule stored for
the product.
"""

from .domain.batch_format import compile_format, describe_format, matches

__all__ = [
    "compile_format",
    "describe_format",
    "matches",
]
