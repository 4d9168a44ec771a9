"""
Crawler pipeline stages.
"""

from .frontier import (
    FrontierCoordinator, HostFilter, AckDelayPolicy, Admission, AdmissionResult, inject_seeds
)
from .fetcher import WebFetcher, FetchResult, FetchStage
from .parser import LinkExtractor, ParseStage
from .analyzer import AnalyticsSink, CrawlStats

__all__ = [
    'FrontierCoordinator', 'HostFilter', 'AckDelayPolicy', 'Admission', 'AdmissionResult',
    'inject_seeds',
    'WebFetcher', 'FetchResult', 'FetchStage',
    'LinkExtractor', 'ParseStage',
    'AnalyticsSink', 'CrawlStats'
]
