"""
Document assembly and index commit stage of the distributed web crawling system.
"""

__version__ = "0.1.0"
