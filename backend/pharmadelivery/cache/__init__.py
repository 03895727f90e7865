"""
Redis access for change notifications, counters and the analytics queue.
"""
