"""devicestore – on-device DuckDB storage facade."""

__version__ = "1.0.0"
