"""
contentblocker package - Content-blocker filter list loader

Modules:
    config: Default sources, limits and sources-file loading
    errors: Loader error taxonomy
    rules: Classify and parse ABP filter rules
    converter: Translate ABP rules into WebKit content-blocker JSON
    cache: On-disk cache of converted lists with a retention window
    downloader: Fetch filter lists over HTTP
    registry: Compile and register content rule lists
    pipeline: Cache-or-refresh loader and CLI
"""

__version__ = "1.0.0"
