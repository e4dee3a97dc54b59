"""Interactive IEC 104 master console"""
