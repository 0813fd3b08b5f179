"""
ludora_ops - Ludora 运维工具集
"""

__version__ = "0.1.0"
