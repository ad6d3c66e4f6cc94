"""ParallelDB: competing database optimization strategies on zero-copy forks."""

__version__ = "0.1.0"
