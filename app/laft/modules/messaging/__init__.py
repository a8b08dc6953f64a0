"""
Messaging module: item chats (user-to-poster, user-to-security) with polling.
"""
