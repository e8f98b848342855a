"""
MCP 远程集成
"""
