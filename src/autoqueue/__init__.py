"""AutoQueue - paced prompt submission to a web creation tool."""

__version__ = "1.0.0"
