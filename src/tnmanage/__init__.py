"""
TrueNAS Manage - A command line tool to manage datasets and NFS shares on TrueNAS systems
"""

__version__ = "1.0.0"
APP_NAME = "tnmanage"
