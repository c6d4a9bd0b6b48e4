"""
Database-backed services of the fee engine
"""
