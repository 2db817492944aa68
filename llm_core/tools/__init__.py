"""工具声明与工具调用的数据结构。"""
