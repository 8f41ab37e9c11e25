"""Session type to provider event type mappings"""
