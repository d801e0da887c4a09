"""
Upstream source clients: one per protocol (MediaWiki API, git checkout,
REST API, wget mirror), all returning normalized Page values.
"""

from .base import Page, SourceClient, HttpSourceClient, classify_status
from .mediawiki import MediaWikiClient
from .nlab import NLabClient
from .wikipedia import WikipediaClient
from .vintage_machinery import VintageMachineryClient
