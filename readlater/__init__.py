"""
Read Later enrichment backend

Fetches readable article content, generates covers, emails reading-device
copies and sends iOS push notifications for saved links.
"""

__version__ = "1.0.0"
