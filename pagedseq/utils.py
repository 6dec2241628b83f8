"""
Small helpers shared across pagedseq.
"""

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

def cdiv(a: int, b: int) -> int:
    """
    Ceiling division of two non-negative integers
    """
    return (a + b - 1) // b
