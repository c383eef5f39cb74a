from smartmark.nvim_plugin import SmartMarkPlugin

__all__ = ['SmartMarkPlugin']
