"""
Utility functions for the crawl indexer.
"""
from urllib.parse import urlparse
import zlib


def get_host(url):
    """Extract the host name (no port, lower case) from a URL."""
    return (urlparse(url).hostname or '').lower()


def get_site(url):
    """Return the host with a leading 'www.' removed."""
    host = get_host(url)
    if host.startswith('www.'):
        return host[4:]
    return host


def partition_for(key, num_partitions):
    """Stable partition number for a key.

    CRC32 is used rather than hash() so the assignment does not change
    between interpreter runs.
    """
    if num_partitions <= 1:
        return 0
    return zlib.crc32(key.encode('utf-8')) % num_partitions


def part_name(partition):
    """Output directory name for a worker partition."""
    return f"part-{partition:05d}"
