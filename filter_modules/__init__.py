"""Filter stages run by post_data_filter.py."""
