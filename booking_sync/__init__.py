"""Booking/scheduling synchronization service"""
