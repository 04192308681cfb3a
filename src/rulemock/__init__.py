"""
rulemock

Rule-driven HTTP and WebSocket mock servers. Rules are read from a document
store on every request, so edits take effect without restarting listeners.
"""

__version__ = '1.0.0'
