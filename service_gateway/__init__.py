"""
Campfire admission gateway service.
"""
