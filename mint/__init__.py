"""
Mint - development VMs on AWS, tracked entirely through resource tags.

This package provisions, reconciles and tears down one EC2 instance per
(owner, vm-name) pair together with its project EBS volume, Elastic IP and
security group. AWS tags are the only state store.
"""

__version__ = "0.1.0"
__author__ = "Mint"
