"""Booking confirmation and lifecycle"""
