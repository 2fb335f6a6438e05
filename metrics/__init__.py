"""Metric models, descriptor registry, scraper registry and exporters"""
