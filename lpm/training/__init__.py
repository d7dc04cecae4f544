"""Training loop, distributed helpers, meters, logging glue and snapshot I/O."""
