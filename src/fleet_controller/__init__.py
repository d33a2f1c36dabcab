"""
Fleet capacity controller for EC2-backed build nodes.

Contains the capacity ledger, primed window scheduling, provisioning and
retention controllers, and the periodic driver that ties them together.
"""
