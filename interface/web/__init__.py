"""Web 接口（FastAPI + uvicorn）"""
