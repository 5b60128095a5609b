# src/phylo_posterior/version_info.py
VERSION = "0.1.0"
