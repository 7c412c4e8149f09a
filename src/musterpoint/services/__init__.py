"""
Service layer for MusterPoint
"""
