#!/usr/bin/env python3
"""
Celery worker startup script for the exam portal
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from examportal.core.celery_app import celery_app
import examportal.tasks.maintenance  # noqa: F401

if __name__ == '__main__':
    celery_app.start()
