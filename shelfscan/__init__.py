"""Turn bookshelf photos into validated book records and deliver them to the waiting client."""

__version__ = "0.3.0"
