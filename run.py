#!/usr/bin/env python
"""
Billing core entry point.
Exposes the application for the ``flask`` CLI (FLASK_APP=run.py), e.g.
``flask seed-plans`` or ``flask next-billing-time 42``.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from billing import create_app

# Create application instance
app = create_app(os.environ.get('FLASK_ENV', 'development'))
