"""skyport — install skyline plugins to a Nintendo Switch over FTP."""

__version__ = "0.3.0"
