"""
In-app notifications, match alerts and announcements.
"""
