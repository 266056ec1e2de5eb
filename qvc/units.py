# -*- coding: utf-8 -*-
# units.py

###############################################################################
# Synopsis:                                                                   #
# Converts QNAP volume sizes to KB, the base unit of all QVC volume metrics   #
#                                                                             #
# License: the Apache License Version 2.0                                     #
###############################################################################

# NOTE: anything that is neither MB nor GB (TB, KB, empty, unknown) takes the
# default multiplier. QNAP reports volumes in MB, GB or TB.
UNIT_MULTIPLIERS = {
    'MB': 1024,
    'GB': 1048576,
}
DEFAULT_MULTIPLIER = 1073741824


def convert_size(size: float, unit: str) -> float:
    """
    Return size expressed in KB, using the multiplier for unit.
    """
    return size * UNIT_MULTIPLIERS.get(unit, DEFAULT_MULTIPLIER)
