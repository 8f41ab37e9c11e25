"""Live availability queries"""
