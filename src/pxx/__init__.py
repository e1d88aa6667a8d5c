"""
pxx: proxy TCP, Unix socket and named pipe connections while executing commands.
"""

__version__ = "0.1.0"
