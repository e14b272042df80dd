"""City records ingestion pipeline: normalize, assign ids, fan out to document and search stores."""

__version__ = "0.1.0"
