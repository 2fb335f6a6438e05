"""Database helpers"""
