# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
ISB Deployer, deploys scenario templates into leased sandbox accounts.
"""

__version__ = "1.0.0"
