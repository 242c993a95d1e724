"""On-device benchmark of interchangeable YOLO inference artifacts."""

__version__ = "1.0.0"
