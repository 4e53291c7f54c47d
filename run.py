#!/usr/bin/env python3
"""Development runner"""
import os
from dbackup.cli import cli

if __name__ == '__main__':
    # Use development settings for local testing
    os.environ.setdefault('DBACKUP_ENV', 'development')
    cli()
