"""顾客分群与生命周期自动化的业务逻辑。"""
