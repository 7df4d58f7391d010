"""
HTTP facade over the media resolver and the analytics queue.
"""
