"""题库练习平台：表格导入去重、作答会话、导出与共享"""

__version__ = "0.1.0"
