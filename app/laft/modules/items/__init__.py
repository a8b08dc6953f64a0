"""
Items module: lost/found reports, images, categories, search.
"""
