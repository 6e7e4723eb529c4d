"""Persistence for image records and pipeline failures"""
