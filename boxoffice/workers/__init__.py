"""Background task queue, handlers and worker"""
