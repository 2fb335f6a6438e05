"""Application service loop"""
