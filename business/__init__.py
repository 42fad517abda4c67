"""业务规则层：不依赖数据库的纯函数与定时任务。"""
