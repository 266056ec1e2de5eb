# -*- coding: utf-8 -*-
# __init__.py

VERSION = '1.0.0'
