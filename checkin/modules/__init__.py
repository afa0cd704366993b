# QR Check-in Attendance System - Modules Package
"""
Core business logic modules for the QR check-in system.
"""
