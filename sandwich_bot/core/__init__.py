"""Core components: config, logging, transaction pipeline"""
