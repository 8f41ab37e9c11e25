"""External service clients (scheduling provider, payments)"""
