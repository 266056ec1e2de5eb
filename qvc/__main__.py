# -*- coding: utf-8 -*-
# __main__.py

from qvc.qvc import cli

cli()
