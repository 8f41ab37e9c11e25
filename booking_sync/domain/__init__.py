"""Domain modules - one package per bounded context"""
