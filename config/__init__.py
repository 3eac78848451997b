"""
配置包
"""
