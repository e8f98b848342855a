"""
长期记忆
"""
